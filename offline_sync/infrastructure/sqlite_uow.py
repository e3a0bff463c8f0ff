from __future__ import annotations

import contextlib
import sqlite3
import uuid
from collections.abc import Iterator


@contextlib.contextmanager
def transaccion(connection: sqlite3.Connection) -> Iterator[None]:
    """Abre una transacción de escritura; si ya hay una abierta usa un SAVEPOINT.

    ``BEGIN IMMEDIATE`` reserva el lock de escritura de SQLite al entrar, así
    otra conexión no puede colarse entre la lectura y la escritura del bloque.
    Cualquier salida por excepción (incluida una cancelación) deshace el bloque.
    """
    if connection.in_transaction:
        savepoint_name = f"sp_{uuid.uuid4().hex}"
        connection.execute(f"SAVEPOINT {savepoint_name}")
        try:
            yield
        except BaseException:
            connection.execute(f"ROLLBACK TO SAVEPOINT {savepoint_name}")
            connection.execute(f"RELEASE SAVEPOINT {savepoint_name}")
            raise
        connection.execute(f"RELEASE SAVEPOINT {savepoint_name}")
        return

    connection.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        connection.rollback()
        raise
    connection.commit()
