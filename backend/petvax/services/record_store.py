import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from petvax.models import AddPetParams, Pet, Reminder, TreatmentRecord, VaccinationRecord
from petvax.services.errors import StorageError
from petvax.services.reminders import REMINDER_OFFSETS, remind_at

PET_ATTRIBUTES = ["species", "breed", "sex", "birthdate", "neutered", "markings", "photo_ref"]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _name_key(name: str) -> str:
    return " ".join(name.split()).casefold()


def _to_utc(value: str) -> str:
    return datetime.fromisoformat(value).astimezone(timezone.utc).isoformat()


@dataclass
class RecordStore:
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._lock:
                with self._connect() as conn:
                    yield conn
                    conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"record store failure: {exc}") from exc

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS owners (
                    user_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL DEFAULT '',
                    first_seen_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pets (
                    id TEXT PRIMARY KEY,
                    owner_user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    name_key TEXT NOT NULL,
                    species TEXT,
                    breed TEXT,
                    sex TEXT,
                    birthdate TEXT,
                    neutered INTEGER,
                    markings TEXT,
                    photo_ref TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vaccinations (
                    id TEXT PRIMARY KEY,
                    owner_user_id TEXT NOT NULL,
                    pet_id TEXT NOT NULL,
                    pet_name TEXT NOT NULL,
                    vaccine_name TEXT NOT NULL,
                    last_shot_date TEXT NOT NULL,
                    next_due_date TEXT NOT NULL,
                    cycle_days INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS treatments (
                    id TEXT PRIMARY KEY,
                    owner_user_id TEXT NOT NULL,
                    pet_id TEXT NOT NULL,
                    pet_name TEXT NOT NULL,
                    treatment_name TEXT NOT NULL,
                    treatment_date TEXT NOT NULL,
                    note TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reminders (
                    id TEXT PRIMARY KEY,
                    vaccination_id TEXT NOT NULL,
                    owner_user_id TEXT NOT NULL,
                    pet_name TEXT NOT NULL,
                    vaccine_name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    remind_at TEXT NOT NULL,
                    remind_at_utc TEXT NOT NULL,
                    sent INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_pets_owner ON pets (owner_user_id, name_key)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_reminders_due ON reminders (sent, remind_at_utc)")

    def ensure_owner(self, user_id: str, display_name: str = "") -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO owners (user_id, display_name, first_seen_at) VALUES (?, ?, ?)",
                (user_id, display_name, _utcnow()),
            )

    # Pets

    def find_pet(self, owner_user_id: str, name: str) -> Optional[Pet]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM pets WHERE owner_user_id = ? AND name_key = ?
                ORDER BY updated_at DESC LIMIT 1
                """,
                (owner_user_id, _name_key(name)),
            ).fetchone()
        return self._row_to_pet(row) if row else None

    def latest_pet(self, owner_user_id: str) -> Optional[Pet]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pets WHERE owner_user_id = ? ORDER BY updated_at DESC, rowid DESC LIMIT 1",
                (owner_user_id,),
            ).fetchone()
        return self._row_to_pet(row) if row else None

    def list_pets(self, owner_user_id: str) -> List[Pet]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM pets WHERE owner_user_id = ? ORDER BY name_key ASC",
                (owner_user_id,),
            ).fetchall()
        return [self._row_to_pet(row) for row in rows]

    def upsert_pet(self, owner_user_id: str, params: AddPetParams) -> Tuple[Pet, bool]:
        """Create the pet or merge non-null attributes into the existing one."""
        name = " ".join(params.name.split())
        updates = {key: getattr(params, key) for key in PET_ATTRIBUTES if getattr(params, key) is not None}
        now = _utcnow()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM pets WHERE owner_user_id = ? AND name_key = ? LIMIT 1",
                (owner_user_id, _name_key(name)),
            ).fetchone()
            created = row is None
            if created:
                pet_id = f"pet_{uuid4().hex[:10]}"
                conn.execute(
                    """
                    INSERT INTO pets (id, owner_user_id, name, name_key, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (pet_id, owner_user_id, name, _name_key(name), now),
                )
            else:
                pet_id = row["id"]
            assignments = ", ".join(f"{key} = ?" for key in updates)
            values: List[Any] = [self._to_column(key, value) for key, value in updates.items()]
            conn.execute(
                f"UPDATE pets SET {assignments + ', ' if assignments else ''}updated_at = ? WHERE id = ?",
                (*values, now, pet_id),
            )
            pet_row = conn.execute("SELECT * FROM pets WHERE id = ?", (pet_id,)).fetchone()
        return self._row_to_pet(pet_row), created

    def find_or_create_pet(self, owner_user_id: str, name: str) -> Pet:
        pet = self.find_pet(owner_user_id, name)
        if pet:
            return pet
        pet, _ = self.upsert_pet(owner_user_id, AddPetParams(name=name))
        return pet

    def set_pet_photo(self, pet_id: str, photo_ref: str) -> Optional[Pet]:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE pets SET photo_ref = ?, updated_at = ? WHERE id = ?",
                (photo_ref, _utcnow(), pet_id),
            )
            row = conn.execute("SELECT * FROM pets WHERE id = ?", (pet_id,)).fetchone()
        return self._row_to_pet(row) if row else None

    # Vaccinations and reminders

    def create_vaccination(self, record: VaccinationRecord, reminders: List[Reminder]) -> VaccinationRecord:
        """Write the record and its reminder triplet in one transaction."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO vaccinations (
                    id, owner_user_id, pet_id, pet_name, vaccine_name,
                    last_shot_date, next_due_date, cycle_days, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.owner_user_id,
                    record.pet_id,
                    record.pet_name,
                    record.vaccine_name,
                    record.last_shot_date,
                    record.next_due_date,
                    record.cycle_days,
                    record.created_at,
                ),
            )
            for reminder in reminders:
                self._insert_reminder(conn, reminder)
        return record

    def list_vaccinations(self, owner_user_id: str, pet_id: str) -> List[VaccinationRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM vaccinations WHERE owner_user_id = ? AND pet_id = ?
                ORDER BY next_due_date ASC, created_at ASC
                """,
                (owner_user_id, pet_id),
            ).fetchall()
        return [VaccinationRecord(**dict(row)) for row in rows]

    def list_reminders(self, vaccination_id: str) -> List[Reminder]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM reminders WHERE vaccination_id = ? ORDER BY remind_at_utc ASC",
                (vaccination_id,),
            ).fetchall()
        return [self._row_to_reminder(row) for row in rows]

    def list_due_reminders(self, before: datetime, limit: int = 100) -> List[Reminder]:
        if before.tzinfo is None:
            before = before.replace(tzinfo=timezone.utc)
        cutoff = before.astimezone(timezone.utc).isoformat()
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reminders WHERE sent = 0 AND remind_at_utc <= ?
                ORDER BY remind_at_utc ASC LIMIT ?
                """,
                (cutoff, limit),
            ).fetchall()
        return [self._row_to_reminder(row) for row in rows]

    def mark_reminder_sent(self, reminder_id: str) -> Optional[Reminder]:
        with self._transaction() as conn:
            conn.execute("UPDATE reminders SET sent = 1 WHERE id = ?", (reminder_id,))
            row = conn.execute("SELECT * FROM reminders WHERE id = ?", (reminder_id,)).fetchone()
        return self._row_to_reminder(row) if row else None

    def reconcile_reminder_triplets(self) -> int:
        """Add missing D-7/D-1/D0 rows for vaccinations written without their full set."""
        repaired = 0
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT v.*, GROUP_CONCAT(r.type) AS present_types
                FROM vaccinations v
                LEFT JOIN reminders r ON r.vaccination_id = v.id
                GROUP BY v.id
                HAVING COUNT(r.id) < ?
                """,
                (len(REMINDER_OFFSETS),),
            ).fetchall()
            for row in rows:
                present = set((row["present_types"] or "").split(","))
                for reminder_type, offset in REMINDER_OFFSETS:
                    if reminder_type in present:
                        continue
                    self._insert_reminder(
                        conn,
                        Reminder(
                            id=f"rem_{uuid4().hex[:10]}",
                            vaccination_id=row["id"],
                            owner_user_id=row["owner_user_id"],
                            pet_name=row["pet_name"],
                            vaccine_name=row["vaccine_name"],
                            type=reminder_type,
                            remind_at=remind_at(row["next_due_date"], offset).isoformat(),
                        ),
                    )
                    repaired += 1
        return repaired

    # Treatments

    def create_treatment(self, record: TreatmentRecord) -> TreatmentRecord:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO treatments (
                    id, owner_user_id, pet_id, pet_name, treatment_name, treatment_date, note, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.owner_user_id,
                    record.pet_id,
                    record.pet_name,
                    record.treatment_name,
                    record.treatment_date,
                    record.note,
                    record.created_at,
                ),
            )
        return record

    def list_treatments(self, owner_user_id: str, pet_id: str) -> List[TreatmentRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM treatments WHERE owner_user_id = ? AND pet_id = ?
                ORDER BY treatment_date ASC, created_at ASC
                """,
                (owner_user_id, pet_id),
            ).fetchall()
        return [TreatmentRecord(**dict(row)) for row in rows]

    def _insert_reminder(self, conn: sqlite3.Connection, reminder: Reminder) -> None:
        conn.execute(
            """
            INSERT INTO reminders (
                id, vaccination_id, owner_user_id, pet_name, vaccine_name, type, remind_at, remind_at_utc, sent
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                reminder.id,
                reminder.vaccination_id,
                reminder.owner_user_id,
                reminder.pet_name,
                reminder.vaccine_name,
                reminder.type,
                reminder.remind_at,
                _to_utc(reminder.remind_at),
                1 if reminder.sent else 0,
            ),
        )

    def _to_column(self, key: str, value: Any) -> Any:
        if key == "neutered":
            return 1 if value else 0
        return value

    def _row_to_pet(self, row: sqlite3.Row) -> Pet:
        data: Dict[str, Any] = dict(row)
        data.pop("name_key", None)
        if data.get("neutered") is not None:
            data["neutered"] = bool(data["neutered"])
        return Pet(**data)

    def _row_to_reminder(self, row: sqlite3.Row) -> Reminder:
        data: Dict[str, Any] = dict(row)
        data.pop("remind_at_utc", None)
        data["sent"] = bool(data["sent"])
        return Reminder(**data)


default_db = str(Path(__file__).resolve().parents[2] / "data" / "records.sqlite3")


def build_record_store() -> RecordStore:
    return RecordStore(db_path=os.getenv("RECORDS_DB_PATH", default_db))
