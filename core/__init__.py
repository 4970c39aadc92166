"""Ядро клиента прокси-магазина: сессия, API, корзина, оформление заказа, прокси"""
