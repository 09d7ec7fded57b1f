"""
=============================================================================
CABINEX - Herramientas de Línea de Comandos
=============================================================================
    cabinex init-db                      Crea tablas y saldos en cero
    cabinex reset-db --confirm           Borra y recrea todas las tablas
    cabinex clear-data --confirm         Vacía órdenes, retiros y saldos
    cabinex add-key KEY CABINET          Registra una clave de acceso
    cabinex test-telegram                Envía un mensaje de prueba
    cabinex serve --host H --port P      Levanta la API con uvicorn
=============================================================================
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from .app.ledger import initialize_balances
from .app.security import create_access_key
from .app.telegram import TelegramNotifier, build_test_message
from .config import Settings, get_settings
from .database import build_engine, build_session_factory, drop_models, init_models
from .exceptions import CabinexError
from .models import Balance, HiddenOrder, HiddenWithdrawal, Order, OrderRequest, Withdrawal

logger = logging.getLogger(__name__)

# Orden de borrado: primero las marcas que apuntan a las entidades
EXCHANGE_TABLES = (HiddenWithdrawal, HiddenOrder, Withdrawal, OrderRequest, Order, Balance)


async def clear_exchange_data(db: AsyncSession, cabinets: Sequence[str]) -> int:
    """
    Vacía el intercambio (órdenes, solicitudes, retiros, marcas y saldos) y
    vuelve a crear los saldos en cero. Claves, sesiones y logs se conservan.
    """
    async with db.begin():
        for model in EXCHANGE_TABLES:
            result = await db.execute(delete(model))
            logger.info("[CLI] %s: %s filas eliminadas", model.__tablename__, result.rowcount)
    return await initialize_balances(db, cabinets)


async def _init_db(settings: Settings, reset: bool = False) -> int:
    engine = build_engine(settings.database_url)
    try:
        if reset:
            await drop_models(engine)
        await init_models(engine)
        async with build_session_factory(engine)() as db:
            created = await initialize_balances(db, settings.cabinets)
    finally:
        await engine.dispose()
    print(f"[CABINEX] Esquema listo, {created} saldos creados")
    return 0


async def _clear_data(settings: Settings) -> int:
    engine = build_engine(settings.database_url)
    try:
        async with build_session_factory(engine)() as db:
            created = await clear_exchange_data(db, settings.cabinets)
    finally:
        await engine.dispose()
    print(f"[CABINEX] Datos eliminados, {created} saldos recreados en cero")
    return 0


async def _add_key(settings: Settings, key: str, cabinet: str, description: Optional[str]) -> int:
    engine = build_engine(settings.database_url)
    try:
        async with build_session_factory(engine)() as db:
            record = await create_access_key(db, key, cabinet, description)
    finally:
        await engine.dispose()
    print(f"[CABINEX] Clave {record.id} creada para {record.cabinet}")
    return 0


async def _test_telegram(settings: Settings) -> int:
    print("Token:", "encontrado" if settings.telegram_bot_token else "NO encontrado")
    print("Canal:", "encontrado" if settings.telegram_channel_id else "NO encontrado")
    if not settings.telegram_enabled:
        print("Configure TELEGRAM_BOT_TOKEN y TELEGRAM_CHANNEL_ID en el entorno o en .env")
        return 1

    sent = await TelegramNotifier.from_settings(settings).send_message(build_test_message())
    print("Mensaje enviado" if sent else "No se pudo enviar el mensaje, revise el log")
    return 0 if sent else 1


def _serve(settings: Settings, host: str, port: int) -> int:
    import uvicorn

    from .app.main import create_app

    uvicorn.run(
        create_app(settings),
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cabinex")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Sobrescribe DATABASE_URL",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Crear tablas y saldos en cero (idempotente)")

    reset_parser = subparsers.add_parser("reset-db", help="Borrar y recrear todas las tablas")
    reset_parser.add_argument("--confirm", action="store_true")

    clear_parser = subparsers.add_parser("clear-data", help="Vaciar órdenes, retiros y saldos")
    clear_parser.add_argument("--confirm", action="store_true")

    key_parser = subparsers.add_parser("add-key", help="Registrar una clave de acceso")
    key_parser.add_argument("key")
    key_parser.add_argument("cabinet")
    key_parser.add_argument("--description", default=None)

    subparsers.add_parser("test-telegram", help="Enviar un mensaje de prueba al canal")

    serve_parser = subparsers.add_parser("serve", help="Levantar la API HTTP")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(
            update={"database_url": Settings.normalize_database_url(args.database_url)}
        )
    logging.basicConfig(level=settings.log_level.upper(), format="%(levelname)s %(name)s %(message)s")

    if args.command in {"reset-db", "clear-data"} and not args.confirm:
        print(f"[CABINEX] {args.command} borra datos; repita el comando con --confirm")
        return 2

    try:
        if args.command == "init-db":
            return asyncio.run(_init_db(settings))
        if args.command == "reset-db":
            return asyncio.run(_init_db(settings, reset=True))
        if args.command == "clear-data":
            return asyncio.run(_clear_data(settings))
        if args.command == "add-key":
            return asyncio.run(_add_key(settings, args.key, args.cabinet, args.description))
        if args.command == "test-telegram":
            return asyncio.run(_test_telegram(settings))
        if args.command == "serve":
            return _serve(settings, args.host, args.port)
    except CabinexError as exc:
        print(f"[CABINEX] Error: {exc.message}", file=sys.stderr)
        return 1

    parser.error(f"comando desconocido: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
