from __future__ import annotations

import argparse
import faulthandler
import logging
import sys
import time
from datetime import timedelta
from typing import Callable, TextIO

from offline_sync.application.background import BackgroundSyncWorker
from offline_sync.bootstrap.container import AppContainer, build_container
from offline_sync.bootstrap.logging import configure_logging, install_exception_hook
from offline_sync.bootstrap.settings import SyncSettings
from offline_sync.core.errors import AppError
from offline_sync.domain.models import CycleOutcome, CycleResult, OutboxEntry
from offline_sync.infrastructure.db import get_connection
from offline_sync.infrastructure.migrations import MigrationRunner

logger = logging.getLogger(__name__)

ContainerFactory = Callable[[SyncSettings], AppContainer]

_EXIT_OK = 0
_EXIT_PARTIAL = 1
_EXIT_ERROR = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="offline-sync", description="Sincronización local-first con outbox")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="Estado de sincronización")
    sync = commands.add_parser("sync", help="Ejecuta un ciclo de sincronización")
    sync.add_argument("--watch", action="store_true", help="Sincroniza cada intervalo hasta Ctrl+C")

    pending = commands.add_parser("pending", help="Entradas pendientes de envío")
    pending.add_argument("--limit", type=int, default=100)
    commands.add_parser("errors", help="Entradas en error")

    requeue = commands.add_parser("requeue", help="Reencola una entrada en error")
    requeue.add_argument("entry_id", type=int)

    conflicts = commands.add_parser("conflicts", help="Conflictos pendientes")
    conflicts_commands = conflicts.add_subparsers(dest="conflicts_command", required=True)
    conflicts_commands.add_parser("list")
    resolve = conflicts_commands.add_parser("resolve")
    resolve.add_argument("conflict_id", type=int)
    resolve.add_argument("--keep", choices=("local", "remote"), required=True)

    purge = commands.add_parser("purge", help="Elimina entradas enviadas antiguas")
    purge.add_argument("--days", type=int, required=True)

    migrate = commands.add_parser("migrate", help="Migraciones del esquema local")
    migrate.add_argument("action", choices=("up", "down", "status"))
    migrate.add_argument("--steps", type=int, default=1)
    return parser


def _format_entry(entry: OutboxEntry) -> str:
    line = f"{entry.id}\t{entry.created_at}\t{entry.action.value}\t{entry.entity_type}/{entry.entity_id}\t{entry.status.value}"
    if entry.last_error:
        line += f"\tattempts={entry.attempts}\t[{entry.last_error_code or '-'}] {entry.last_error}"
    return line


def _format_result(result: CycleResult) -> str:
    return (
        f"{result.outcome.value}: sent={result.sent} failed={result.failed} held_back={result.held_back} "
        f"requeued={result.requeued} conflicts={result.conflicts}"
    )


def _wait_for_interrupt(worker: BackgroundSyncWorker) -> None:
    try:
        while worker.is_running():
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupción recibida: deteniendo el worker")


def _run_watch(container: AppContainer, out: TextIO) -> int:
    worker = container.worker
    out.write(f"Sincronizando cada {container.settings.interval_seconds:g}s (Ctrl+C para salir)\n")
    worker.start()
    try:
        _wait_for_interrupt(worker)
    finally:
        worker.stop()
    out.write(f"Worker detenido tras {worker.cycles_run} ciclos\n")
    if worker.last_result is not None:
        out.write(_format_result(worker.last_result) + "\n")
    return _EXIT_OK


def _run_migrate(args: argparse.Namespace, settings: SyncSettings, out: TextIO) -> int:
    connection = get_connection(settings.db_path)
    try:
        runner = MigrationRunner(connection)
        if args.action == "up":
            applied = runner.apply_all()
            out.write(f"Migraciones aplicadas: {applied or 'ninguna'}\n")
        elif args.action == "down":
            rolled_back = runner.rollback(args.steps)
            out.write(f"Migraciones revertidas: {rolled_back or 'ninguna'}\n")
        else:
            for item in runner.status():
                mark = "x" if item["applied"] else " "
                out.write(f"[{mark}] {int(item['version']):04d} {item['name']}\n")
    finally:
        connection.close()
    return _EXIT_OK


def _run_command(args: argparse.Namespace, container: AppContainer, out: TextIO) -> int:
    if args.command == "status":
        status = container.orchestrator.status()
        out.write(f"last_sync: {status.last_sync_timestamp or 'nunca'}\n")
        out.write(f"pending: {status.pending_count}\n")
        out.write(f"errors: {status.error_count}\n")
        out.write(f"conflicts: {status.conflict_count}\n")
        out.write(f"syncing: {'sí' if status.is_syncing else 'no'}\n")
        if status.last_error:
            out.write(f"last_error: {status.last_error}\n")
        return _EXIT_OK

    if args.command == "sync":
        if args.watch:
            return _run_watch(container, out)
        result = container.orchestrator.run_cycle()
        out.write(_format_result(result) + "\n")
        for scope, error in sorted(result.scope_errors.items()):
            out.write(f"  {scope}: {error}\n")
        if result.outcome in (CycleOutcome.PARTIAL, CycleOutcome.CANCELLED):
            return _EXIT_PARTIAL
        return _EXIT_OK

    if args.command == "pending":
        for entry in container.outbox.get_pending(limit=args.limit):
            out.write(_format_entry(entry) + "\n")
        return _EXIT_OK

    if args.command == "errors":
        for entry in container.outbox.list_errors():
            out.write(_format_entry(entry) + "\n")
        return _EXIT_OK

    if args.command == "requeue":
        entry = container.outbox.requeue(args.entry_id)
        out.write(f"Entrada {entry.id} reencolada\n")
        return _EXIT_OK

    if args.command == "conflicts":
        if args.conflicts_command == "list":
            for conflict in container.conflicts_service.list_conflicts():
                out.write(
                    f"{conflict.id}\t{conflict.detected_at}\t{conflict.origin}\t"
                    f"{conflict.entity_type}/{conflict.entity_id}\n"
                )
            return _EXIT_OK
        conflict = container.conflicts_service.resolve(args.conflict_id, keep_local=args.keep == "local")
        out.write(f"Conflicto {conflict.id} resuelto ({args.keep})\n")
        return _EXIT_OK

    if args.command == "purge":
        removed = container.outbox.purge_sent(timedelta(days=args.days))
        out.write(f"Entradas enviadas eliminadas: {removed}\n")
        return _EXIT_OK

    raise ValueError(f"Comando no soportado: {args.command}")


def main(
    argv: list[str] | None = None,
    *,
    settings: SyncSettings | None = None,
    container_factory: ContainerFactory | None = None,
    setup_logging: bool = True,
    out: TextIO | None = None,
) -> int:
    args = _build_parser().parse_args(argv)
    stream = out or sys.stdout
    resolved_settings = settings or SyncSettings.from_env()

    if setup_logging:
        configure_logging(resolved_settings.log_dir)
        install_exception_hook(resolved_settings.log_dir)
        faulthandler.enable()
        logger.info("Log dir: %s", resolved_settings.log_dir)

    try:
        if args.command == "migrate":
            return _run_migrate(args, resolved_settings, stream)
        container = (container_factory or build_container)(resolved_settings)
        try:
            return _run_command(args, container, stream)
        finally:
            container.close()
    except AppError as exc:
        logger.warning("Comando %s falló: %s", args.command, exc)
        sys.stderr.write(f"Error: {exc}\n")
        return _EXIT_ERROR
