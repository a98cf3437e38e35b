"""Repositories for the incident, room, user and permission lookups."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import psycopg2
import psycopg2.extensions

from datalayer_export.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

    from datalayer_export.core import config


class DatalayerRepositoryProtocol(Protocol):
    """Protocol interface for the relational lookups the export relies on.

    Implementations are read-only views over the incident store, supporting
    both in-memory (testing) and PostgreSQL (production) backends.
    """

    def get_user_id(self, username: str) -> int | None: ...

    def get_incident(self, incident_id: int) -> db_models.Incident | None: ...

    def get_collab_room_name(self, collab_room_id: int) -> str | None: ...

    def has_permission(
        self,
        user_id: int,
        collab_room_id: int,
        incident_map_name: str,
    ) -> bool: ...


class InMemoryDatalayerRepository(DatalayerRepositoryProtocol):
    """Simple in-memory store for tests and local development.

    Data is lost when the process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory repository."""
        self._users: dict[str, int] = {}
        self._incidents: dict[int, db_models.Incident] = {}
        self._rooms: dict[int, str] = {}
        self._permissions: set[tuple[int, int]] = set()

    def add_user(self, username: str, user_id: int) -> None:
        self._users[username] = user_id

    def add_incident(self, incident: db_models.Incident) -> None:
        self._incidents[incident.incident_id] = incident

    def add_collab_room(self, collab_room_id: int, name: str) -> None:
        self._rooms[collab_room_id] = name

    def grant(self, user_id: int, collab_room_ids: Iterable[int]) -> None:
        """Give ``user_id`` read/write access to each room."""
        for room_id in collab_room_ids:
            self._permissions.add((user_id, room_id))

    def get_user_id(self, username: str) -> int | None:
        return self._users.get(username)

    def get_incident(self, incident_id: int) -> db_models.Incident | None:
        return self._incidents.get(incident_id)

    def get_collab_room_name(self, collab_room_id: int) -> str | None:
        return self._rooms.get(collab_room_id)

    def has_permission(
        self,
        user_id: int,
        collab_room_id: int,
        incident_map_name: str,
    ) -> bool:
        """Check room access.

        Rooms whose name ends with ``incident_map_name`` are readable by
        everyone, matching the Postgres implementation.
        """
        room_name = self._rooms.get(collab_room_id)
        if room_name is not None and room_name.endswith(incident_map_name):
            return True

        return (user_id, collab_room_id) in self._permissions


class PostgresDatalayerRepository(DatalayerRepositoryProtocol):
    """PostgreSQL-backed repository over the incident store tables.

    The schema is owned by the rest of the platform; this repository only
    reads from it.
    """

    USER_ID_SQL = 'SELECT userid FROM "user" WHERE username = %s'
    INCIDENT_SQL = "SELECT incidentid, incidentname FROM incident WHERE incidentid = %s"
    INCIDENT_TYPES_SQL = """
    SELECT it.incidenttypename
    FROM incident_incidenttype iit
    JOIN incidenttype it ON it.incidenttypeid = iit.incidenttypeid
    WHERE iit.incidentid = %s
    ORDER BY iit.incident_incidenttypeid
    """
    ROOM_NAME_SQL = "SELECT name FROM collabroom WHERE collabroomid = %s"
    PERMISSION_SQL = """
    SELECT EXISTS (
        SELECT 1
        FROM collabroom c
        WHERE c.collabroomid = %(room)s
          AND (
            c.name LIKE %(incident_map)s
            OR EXISTS (
                SELECT 1 FROM collabroompermission p
                WHERE p.collabroomid = c.collabroomid
                  AND p.userid = %(user)s
            )
          )
    )
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize repository with database settings.

        Args:
            settings: Application settings containing database connection URL.
        """
        self.settings = settings

    def _connection(self) -> psycopg2.extensions.connection:
        return psycopg2.connect(self.settings.database_url)

    def get_user_id(self, username: str) -> int | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.USER_ID_SQL, (username,))
            row = cur.fetchone()
            return int(row[0]) if row is not None else None

    def get_incident(self, incident_id: int) -> db_models.Incident | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.INCIDENT_SQL, (incident_id,))
            row = cur.fetchone()
            if row is None:
                return None

            cur.execute(self.INCIDENT_TYPES_SQL, (incident_id,))
            type_names = tuple(str(r[0]) for r in cur.fetchall())
            return db_models.Incident(
                incident_id=int(row[0]),
                name=str(row[1] or ""),
                incident_type_names=type_names,
            )

    def get_collab_room_name(self, collab_room_id: int) -> str | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.ROOM_NAME_SQL, (collab_room_id,))
            row = cur.fetchone()
            return str(row[0]) if row is not None else None

    def has_permission(
        self,
        user_id: int,
        collab_room_id: int,
        incident_map_name: str,
    ) -> bool:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                self.PERMISSION_SQL,
                {
                    "room": collab_room_id,
                    "incident_map": f"%{incident_map_name}",
                    "user": user_id,
                },
            )
            row = cur.fetchone()
            return bool(row and row[0])


def get_datalayer_repository(
    settings: config.Settings,
) -> DatalayerRepositoryProtocol:
    """Factory function to create the production repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresDatalayerRepository instance.
    """
    return PostgresDatalayerRepository(settings)
