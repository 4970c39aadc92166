"""Вспомогательные функции"""
