# main.py
import asyncio
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from core.config_manager import get_app_data_dir, get_config
from core.errors import InsufficientBalance, ProxyShopError
from core.models import ReasonCode, connection_string


def setup_logging():
    """Настраивает логирование ДО всех операций с ротацией"""
    from logging.handlers import RotatingFileHandler

    config = get_config()
    logs_dir = get_app_data_dir() / "logs"
    logs_dir.mkdir(exist_ok=True)

    log_file = logs_dir / "proxyshop_client.log"

    # Ротирующий обработчик: по умолчанию 5MB, 5 резервных копий
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=config.get('logging.max_bytes', 5 * 1024 * 1024),
        backupCount=config.get('logging.backup_count', 5),
        encoding='utf-8'
    )
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    # в консоль только предупреждения, чтобы не мешать выводу команд
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    logging.basicConfig(
        level=config.get('logging.level', 'INFO'),
        handlers=[console_handler, file_handler]
    )


logger = logging.getLogger(__name__)


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Необработанное исключение:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


app = typer.Typer(
    name="proxyshop",
    help="Клиент прокси-магазина: покупка и управление прокси.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()


def _run(coro_factory):
    """Выполнить async команду с клиентом и понятным выводом ошибок"""
    from core.client import ProxyShopClient

    async def runner():
        async with ProxyShopClient.from_config() as client:
            return await coro_factory(client)

    try:
        return asyncio.run(runner())
    except ProxyShopError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(code=1)


@app.command(help="Войти и сохранить сессию.")
def login(
    username: Annotated[str, typer.Argument(help="Имя пользователя")],
    password: Annotated[str, typer.Option(prompt=True, hide_input=True)],
):
    async def action(client):
        session = await client.login(username, password)
        console.print(f"[green]✅ Logged in as {session.display_name}[/green]")

    _run(action)


@app.command(help="Выйти и удалить сессию.")
def logout():
    async def action(client):
        await client.logout()
        console.print("[green]✅ Logged out[/green]")

    _run(action)


@app.command(help="Список доступных пакетов.")
def packages():
    async def action(client):
        table = Table(title="Packages")
        for column in ("ID", "Name", "Kind", "Price"):
            table.add_column(column)
        for package in await client.catalog.list_packages():
            table.add_row(package.package_id, package.name, package.service_kind.value, str(package.price))
        console.print(table)

    _run(action)


@app.command(help="Мои прокси.")
def proxies():
    async def action(client):
        table = Table(title="Proxies")
        for column in ("ID", "Plan", "Connection", "Country", "Kind", "Status"):
            table.add_column(column)
        for entitlement in await client.proxies.refresh():
            table.add_row(
                entitlement.id, entitlement.plan_id, connection_string(entitlement),
                entitlement.country, entitlement.kind.value, entitlement.status.value,
            )
        console.print(table)

    _run(action)


@app.command(help="Проверить прокси.")
def check(proxy_id: str):
    async def action(client):
        result = await client.proxies.check_status(proxy_id)
        console.print(f"🩺 {proxy_id}: [bold]{result.status.value}[/bold]")

    _run(action)


@app.command(help="Сменить IP rotating плана.")
def rotate(plan_id: str):
    async def action(client):
        await client.proxies.refresh()
        result = await client.proxies.rotate(plan_id)
        console.print(f"🔄 {result.previous_ip} -> [bold]{result.new_ip}[/bold]")

    _run(action)


@app.command(help="Запросить замену прокси.")
def replace(
    proxy_id: str,
    reason: Annotated[ReasonCode, typer.Option(help="Причина замены")] = ReasonCode.NOT_WORKING,
    details: Annotated[str, typer.Option(help="Комментарий")] = "",
):
    async def action(client):
        request = await client.proxies.request_replacement(proxy_id, reason, details)
        console.print(f"📝 Replacement request: {request.status.value}")

    _run(action)


@app.command(help="Баланс и последние операции.")
def wallet(page: Annotated[int, typer.Option(min=1)] = 1):
    async def action(client):
        account = await client.wallet.sync()
        console.print(f"💰 Balance: [bold]{account.balance}[/bold]")
        history = await client.wallet.transactions_page(page, 10)
        table = Table(title=f"Transactions (page {page})")
        for column in ("Date", "Type", "Amount", "Description"):
            table.add_column(column)
        for tx in history.items:
            table.add_row(str(tx.created_at or ""), tx.kind, str(tx.amount), tx.description)
        console.print(table)

    _run(action)


@app.command(help="Купить пакет с оплатой из кошелька.")
def buy(
    package_id: str,
    quantity: Annotated[int, typer.Option(min=1)] = 1,
    payment_source: Annotated[Optional[str], typer.Option()] = None,
):
    async def action(client):
        package = await client.catalog.get_package(package_id)
        client.cart.add(package.to_cart_item(quantity))
        try:
            order = await client.checkout.run(payment_source)
        except InsufficientBalance as e:
            console.print(f"[yellow]⚠️ Need {e.required}, wallet has {e.available}. Top up first.[/yellow]")
            raise typer.Exit(code=2)
        console.print(f"[green]✅ Order {order.order_id}: {order.status.value}[/green]")
        console.print(f"💰 Balance: {client.wallet.balance}")

    _run(action)


def main():
    setup_logging()
    setup_exception_handler()
    logger.info("🚀 Запуск ProxyShop Client")
    app()


if __name__ == "__main__":
    main()
