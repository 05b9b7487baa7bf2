from __future__ import annotations

import asyncio
import difflib
import logging
import os
import re
import sqlite3
import uuid
from typing import Any, Protocol

import httpx

from healthguide_agent_core.models import BookingRecord
from memory.database import SQLiteMemoryDB
from memory.time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)

NO_PROVIDERS_INFO = "No doctors available in database."
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_FUZZY_CUTOFF = 0.6

DEMO_DOCTORS = [
    ("Dr. Sarah Chen", "General Practice", "Downtown Health Center"),
    ("Dr. Miguel Alvarez", "Pediatrics", "Riverside Clinic"),
    ("Dr. Priya Nair", "Cardiology", "Heart & Vascular Institute"),
    ("Dr. James Okafor", "Dermatology", "Northside Medical Plaza"),
    ("Dr. Emily Hart", "Family Medicine", "Lakeside Family Practice"),
]


class BookingGateway(Protocol):
    async def list_providers(self) -> dict[str, Any]: ...

    async def create_booking(
        self,
        provider_id_or_name: str,
        patient_name: str,
        patient_age: int,
        reason: str,
        address: str,
        zipcode: str,
    ) -> dict[str, Any]: ...


def is_provider_uuid(value: str) -> bool:
    return bool(_UUID_RE.match(value or ""))


def closest_provider(name: str, providers: list[dict[str, Any]]) -> dict[str, Any] | None:
    by_lower = {str(row.get("name", "")).lower(): row for row in providers if row.get("name")}
    matches = difflib.get_close_matches(name.lower(), list(by_lower), n=1, cutoff=_FUZZY_CUTOFF)
    return by_lower[matches[0]] if matches else None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _booking_record(row: dict[str, Any], provider_name: str) -> BookingRecord:
    return BookingRecord(
        id=str(row["id"]),
        provider_id=str(row["doctor_id"]),
        provider_display_name=provider_name,
        patient_name=str(row["patient_name"]),
        patient_age=int(row["patient_age"]),
        reason=str(row["reason_for_appointment"]),
        address=str(row["street_address"]),
        zipcode=str(row["zipcode"]),
        created_at=str(row["created_at"]),
    )


class SQLiteBookingGateway:
    """Provider directory and booking table kept in the local SQLite database."""

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def seed_demo_doctors(self) -> int:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            existing = conn.execute("SELECT COUNT(*) AS count FROM doctors").fetchone()["count"]
            if existing:
                return 0
            conn.executemany(
                "INSERT INTO doctors (id, name, specialty, location, created_at) VALUES (?, ?, ?, ?, ?)",
                [(str(uuid.uuid4()), name, specialty, location, now) for name, specialty, location in DEMO_DOCTORS],
            )
        return len(DEMO_DOCTORS)

    def add_doctor(self, name: str, specialty: str | None = None, location: str | None = None) -> dict[str, Any]:
        doctor = {"id": str(uuid.uuid4()), "name": name, "specialty": specialty, "location": location}
        with self._db.connection() as conn:
            conn.execute(
                "INSERT INTO doctors (id, name, specialty, location, created_at) VALUES (?, ?, ?, ?, ?)",
                (doctor["id"], name, specialty, location, to_iso(utc_now())),
            )
        return doctor

    def list_bookings(self) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.doctor_id, d.name AS doctor_name, p.patient_name, p.patient_age,
                       p.reason_for_appointment, p.street_address, p.zipcode, p.created_at
                FROM patients p
                JOIN doctors d ON d.id = p.doctor_id
                ORDER BY p.created_at DESC
                """
            ).fetchall()
        return [_booking_record(dict(row), row["doctor_name"]).as_dict() for row in rows]

    async def list_providers(self) -> dict[str, Any]:
        try:
            providers = await asyncio.to_thread(self._list_rows)
        except sqlite3.Error as exc:
            logger.error("doctor lookup failed: %s", exc)
            return {"error": f"Database error: {exc}"}
        if not providers:
            return {"info": NO_PROVIDERS_INFO}
        return {"providers": providers}

    async def create_booking(
        self,
        provider_id_or_name: str,
        patient_name: str,
        patient_age: int,
        reason: str,
        address: str,
        zipcode: str,
    ) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(
                self._create_booking,
                provider_id_or_name,
                patient_name,
                patient_age,
                reason,
                address,
                zipcode,
            )
        except sqlite3.Error as exc:
            logger.error("booking insert failed: %s", exc)
            return {"error": f"Booking Failed: {exc}"}

    def _list_rows(self) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute("SELECT id, name, specialty, location FROM doctors ORDER BY name ASC").fetchall()
        return [dict(row) for row in rows]

    def _resolve_provider(self, conn: sqlite3.Connection, provider_id_or_name: str) -> dict[str, Any] | None:
        if is_provider_uuid(provider_id_or_name):
            row = conn.execute("SELECT id, name FROM doctors WHERE id = ?", (provider_id_or_name.lower(),)).fetchone()
            return dict(row) if row else None
        row = conn.execute(
            "SELECT id, name FROM doctors WHERE lower(name) LIKE ? ESCAPE '\\' ORDER BY name ASC LIMIT 1",
            (f"%{_escape_like(provider_id_or_name.lower())}%",),
        ).fetchone()
        if row:
            return dict(row)
        candidates = [dict(item) for item in conn.execute("SELECT id, name FROM doctors").fetchall()]
        return closest_provider(provider_id_or_name, candidates)

    def _create_booking(
        self,
        provider_id_or_name: str,
        patient_name: str,
        patient_age: int,
        reason: str,
        address: str,
        zipcode: str,
    ) -> dict[str, Any]:
        with self._db.connection() as conn:
            provider = self._resolve_provider(conn, provider_id_or_name)
            if not provider:
                return {"error": f'Could not find doctor "{provider_id_or_name}".'}
            row = {
                "id": str(uuid.uuid4()),
                "doctor_id": provider["id"],
                "patient_name": patient_name,
                "patient_age": patient_age,
                "reason_for_appointment": reason,
                "street_address": address,
                "zipcode": zipcode,
                "created_at": to_iso(utc_now()),
            }
            conn.execute(
                """
                INSERT INTO patients (
                  id, doctor_id, patient_name, patient_age, reason_for_appointment,
                  street_address, zipcode, created_at
                )
                VALUES (:id, :doctor_id, :patient_name, :patient_age, :reason_for_appointment,
                        :street_address, :zipcode, :created_at)
                """,
                row,
            )
        return {"success": True, "record": _booking_record(row, provider["name"])}


class GatewayResponseError(RuntimeError):
    """PostgREST answered with an error status or a body that is not a row list."""


class PostgrestBookingGateway:
    """Same contract against a Supabase/PostgREST ``doctors`` and ``patients`` schema."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("SUPABASE_URL") or "").rstrip("/")
        self.api_key = (api_key or os.getenv("SUPABASE_KEY") or "").strip()
        self.timeout = timeout_seconds or float(os.getenv("HEALTHGUIDE_GATEWAY_TIMEOUT_SECONDS", "10"))
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            headers={
                "apikey": self.api_key,
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(self.timeout, connect=5.0),
            transport=self._transport,
        )

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("message"), str):
            return payload["message"]
        return response.text.strip() or f"HTTP {response.status_code}"

    @classmethod
    def _rows(cls, response: httpx.Response) -> list[dict[str, Any]]:
        if response.status_code >= 400:
            raise GatewayResponseError(cls._error_text(response))
        try:
            payload = response.json()
        except ValueError:
            raise GatewayResponseError("unreadable response") from None
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list) or not all(isinstance(row, dict) for row in payload):
            raise GatewayResponseError("unreadable response")
        return payload

    async def list_providers(self) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get("/doctors", params={"select": "*"})
            rows = self._rows(response)
        except httpx.HTTPError as exc:
            return {"error": f"Unexpected error: {exc}"}
        except GatewayResponseError as exc:
            logger.error("doctor lookup failed: HTTP %s (%s)", response.status_code, exc)
            return {"error": f"Database error: {exc}"}
        if not rows:
            return {"info": NO_PROVIDERS_INFO}
        return {"providers": rows}

    async def _resolve_provider(self, client: httpx.AsyncClient, provider_id_or_name: str) -> dict[str, Any] | None:
        if is_provider_uuid(provider_id_or_name):
            response = await client.get("/doctors", params={"select": "id,name", "id": f"eq.{provider_id_or_name}"})
            rows = self._rows(response)
            return rows[0] if rows else None
        # "*" is the PostgREST wildcard and cannot be escaped inside ilike.
        needle = _escape_like(provider_id_or_name.replace("*", "").strip())
        if needle:
            response = await client.get(
                "/doctors",
                params={"select": "id,name", "name": f"ilike.*{needle}*", "limit": "1"},
            )
            rows = self._rows(response)
            if rows:
                return rows[0]
        response = await client.get("/doctors", params={"select": "id,name"})
        return closest_provider(provider_id_or_name, self._rows(response))

    async def create_booking(
        self,
        provider_id_or_name: str,
        patient_name: str,
        patient_age: int,
        reason: str,
        address: str,
        zipcode: str,
    ) -> dict[str, Any]:
        try:
            async with self._client() as client:
                provider = await self._resolve_provider(client, provider_id_or_name)
                if not provider:
                    return {"error": f'Could not find doctor "{provider_id_or_name}".'}
                booking_payload = {
                    "doctor_id": provider["id"],
                    "patient_name": patient_name,
                    "patient_age": patient_age,
                    "reason_for_appointment": reason,
                    "street_address": address,
                    "zipcode": zipcode,
                }
                response = await client.post(
                    "/patients",
                    json=[booking_payload],
                    headers={"Prefer": "return=representation"},
                )
        except httpx.HTTPError as exc:
            return {"error": f"System Exception: {exc}"}
        except GatewayResponseError as exc:
            return {"error": f"System Exception: Doctor lookup failed: {exc}"}
        if response.status_code >= 400:
            return {"error": f"Booking Failed: {self._error_text(response)}"}

        # The row exists once PostgREST accepts the insert, so an empty or
        # unreadable representation still yields a record for the caller.
        try:
            inserted = self._rows(response)
        except GatewayResponseError:
            inserted = []
        if not inserted:
            logger.warning("booking insert returned no representation (HTTP %s)", response.status_code)
        row = {"id": str(uuid.uuid4()), "created_at": to_iso(utc_now()), **booking_payload}
        if inserted:
            row.update(inserted[0])
        return {"success": True, "record": _booking_record(row, str(provider["name"]))}
