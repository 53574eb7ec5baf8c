#!/usr/bin/env python3
"""Record Store - Persistent machine records using SQLAlchemy ORM.

Holds one record per machine. Spec and status are written through separate
operations so each writer only touches its own half of the record. Every
update is checked against the record version and fails on a stale write.
"""

import json
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.orm import scoped_session, sessionmaker

from metalscale.persistence.models import Base, Machine
from metalscale.persistence.records import (
    ControlType,
    IPMIControl,
    MachineRecord,
    MachineSpec,
    MachineStatus,
    Phase,
    PowerState,
    WOLControl,
)


logger = logging.getLogger(__name__)

# Constants
DEFAULT_DB_PATH = "metalscale.db"


class ChangeType(Enum):
    """Kind of write a change listener is notified about."""

    CREATED = "created"
    SPEC = "spec"
    STATUS = "status"
    DELETED = "deleted"


ChangeListener = Callable[[str, ChangeType], None]


class StoreError(Exception):
    """Base exception for record store errors."""


class RecordNotFoundError(StoreError):
    """Raised when a record does not exist."""


class RecordExistsError(StoreError):
    """Raised when creating a record whose name is taken."""


class ConflictError(StoreError):
    """Raised when an update carries a stale version.

    The caller should re-read the record and reissue the update.
    """


def _to_record(row: Machine) -> MachineRecord:
    wol = None
    if any(
        value is not None
        for value in (
            row.wol_address,
            row.wol_mac_address,
            row.wol_port,
            row.wol_broadcast_address,
            row.wol_user,
        )
    ):
        wol = WOLControl(
            address=row.wol_address,
            mac_address=row.wol_mac_address,
            port=row.wol_port,
            broadcast_address=row.wol_broadcast_address,
            user=row.wol_user,
        )

    ipmi = None
    if any(value is not None for value in (row.ipmi_address, row.ipmi_username, row.ipmi_password)):
        ipmi = IPMIControl(
            address=row.ipmi_address,
            username=row.ipmi_username,
            password=row.ipmi_password,
        )

    return MachineRecord(
        name=row.name,
        spec=MachineSpec(
            power_state=PowerState(row.power_state) if row.power_state else None,
            control_type=ControlType(row.control_type),
            wol=wol,
            ipmi=ipmi,
        ),
        status=MachineStatus(
            phase=Phase(row.phase) if row.phase else None,
            message=row.message or "",
            failing_since=datetime.fromisoformat(row.failing_since) if row.failing_since else None,
            failure_count=row.failure_count or 0,
        ),
        labels=json.loads(row.labels) if row.labels else {},
        version=row.version,
    )


def _spec_values(record: MachineRecord) -> Dict[str, Any]:
    spec = record.spec
    wol = spec.wol or WOLControl()
    ipmi = spec.ipmi or IPMIControl()
    return {
        "power_state": spec.power_state.value if spec.power_state else None,
        "control_type": spec.control_type.value,
        "wol_address": wol.address,
        "wol_mac_address": wol.mac_address,
        "wol_port": wol.port,
        "wol_broadcast_address": wol.broadcast_address,
        "wol_user": wol.user,
        "ipmi_address": ipmi.address,
        "ipmi_username": ipmi.username,
        "ipmi_password": ipmi.password,
        "labels": json.dumps(record.labels) if record.labels else None,
    }


def _status_values(record: MachineRecord) -> Dict[str, Any]:
    status = record.status
    return {
        "phase": status.phase.value if status.phase else None,
        "message": status.message or "",
        "failing_since": status.failing_since.isoformat() if status.failing_since else None,
        "failure_count": status.failure_count,
    }


class RecordStore:
    """Machine record storage using SQLAlchemy ORM.

    Provides get/list/update with optimistic concurrency and notifies
    registered listeners with the machine name after every committed write.

    Attributes:
        db_path: Path to SQLite database file
        engine: SQLAlchemy engine
        Session: Scoped session factory
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH) -> None:
        """Initialize record store with SQLAlchemy.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._listeners: List[ChangeListener] = []
        self._listeners_lock = threading.Lock()

        if db_path == ":memory:":
            from sqlalchemy.pool import StaticPool

            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            db_parent = Path(db_path).parent
            if db_parent != Path():
                db_parent.mkdir(parents=True, exist_ok=True)

            self.engine = create_engine(
                f"sqlite:///{db_path}",
                connect_args={"check_same_thread": False},
                echo=False,
            )

        session_factory = sessionmaker(bind=self.engine)
        self.Session = scoped_session(session_factory)

        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        try:
            Base.metadata.create_all(self.engine)
            logger.debug(f"Database initialized at {self.db_path}")
        except Exception as exc:
            msg = f"Failed to initialize database: {exc}"
            logger.error(msg)
            raise StoreError(msg) from exc

    def close(self) -> None:
        """Release database connections."""
        self.Session.remove()
        self.engine.dispose()

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked with the machine name and change type after each write."""
        with self._listeners_lock:
            self._listeners.append(listener)

    def _notify(self, name: str, change: ChangeType) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(name, change)
            except Exception as exc:
                logger.error(f"Change listener failed for {name}: {exc}")

    def get(self, name: str) -> Optional[MachineRecord]:
        """Get a record by name.

        Args:
            name: Machine name

        Returns:
            MachineRecord or None if not found
        """
        session = self.Session()
        try:
            row = session.execute(select(Machine).where(Machine.name == name)).scalar_one_or_none()
            if row is None:
                return None
            return _to_record(row)
        except Exception as exc:
            msg = f"Failed to get machine {name}: {exc}"
            logger.error(msg)
            raise StoreError(msg) from exc
        finally:
            session.close()

    def list(self) -> List[MachineRecord]:
        """List all records ordered by name."""
        session = self.Session()
        try:
            rows = session.execute(select(Machine).order_by(Machine.name)).scalars().all()
            return [_to_record(row) for row in rows]
        except Exception as exc:
            msg = f"Failed to list machines: {exc}"
            logger.error(msg)
            raise StoreError(msg) from exc
        finally:
            session.close()

    def create(self, record: MachineRecord) -> MachineRecord:
        """Create a new record.

        Args:
            record: Record to insert (version is ignored)

        Returns:
            The stored record with its initial version

        Raises:
            RecordExistsError: If a record with that name exists
            StoreError: If the insert fails
        """
        session = self.Session()
        try:
            existing = session.get(Machine, record.name)
            if existing is not None:
                raise RecordExistsError(f"Machine {record.name} already exists")

            row = Machine(
                name=record.name,
                version=1,
                created_at=datetime.now(timezone.utc).isoformat(),
                **_spec_values(record),
                **_status_values(record),
            )
            session.add(row)
            session.commit()
            logger.info(f"Created machine {record.name}")
        except StoreError:
            session.rollback()
            raise
        except Exception as exc:
            session.rollback()
            msg = f"Failed to create machine {record.name}: {exc}"
            logger.error(msg)
            raise StoreError(msg) from exc
        finally:
            session.close()

        self._notify(record.name, ChangeType.CREATED)
        return replace(record, version=1)

    def update_spec(self, record: MachineRecord) -> MachineRecord:
        """Write the desired state and labels of a record.

        Raises:
            RecordNotFoundError: If the record no longer exists
            ConflictError: If the record changed since it was read
        """
        return self._update(record, _spec_values(record), ChangeType.SPEC)

    def update_status(self, record: MachineRecord) -> MachineRecord:
        """Write the observed state of a record.

        Raises:
            RecordNotFoundError: If the record no longer exists
            ConflictError: If the record changed since it was read
        """
        return self._update(record, _status_values(record), ChangeType.STATUS)

    def _update(
        self, record: MachineRecord, values: Dict[str, Any], change: ChangeType
    ) -> MachineRecord:
        session = self.Session()
        try:
            stmt = (
                update(Machine)
                .where(Machine.name == record.name, Machine.version == record.version)
                .values(version=record.version + 1, **values)
            )
            result = session.execute(stmt)

            if result.rowcount == 0:
                exists = session.get(Machine, record.name) is not None
                session.rollback()
                if not exists:
                    raise RecordNotFoundError(f"Machine {record.name} not found")
                raise ConflictError(
                    f"Machine {record.name} was modified concurrently (version {record.version} is stale)"
                )

            session.commit()
        except StoreError:
            raise
        except Exception as exc:
            session.rollback()
            msg = f"Failed to update machine {record.name}: {exc}"
            logger.error(msg)
            raise StoreError(msg) from exc
        finally:
            session.close()

        self._notify(record.name, change)
        return replace(record, version=record.version + 1)

    def delete(self, name: str) -> None:
        """Delete a record.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        session = self.Session()
        try:
            result = session.execute(delete(Machine).where(Machine.name == name))
            if result.rowcount == 0:
                session.rollback()
                raise RecordNotFoundError(f"Machine {name} not found")
            session.commit()
            logger.info(f"Deleted machine {name}")
        except StoreError:
            raise
        except Exception as exc:
            session.rollback()
            msg = f"Failed to delete machine {name}: {exc}"
            logger.error(msg)
            raise StoreError(msg) from exc
        finally:
            session.close()

        self._notify(name, ChangeType.DELETED)
