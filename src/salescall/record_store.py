"""Customer record store.

Customer rows are read when a call is answered and the call outcome is
written back when the call ends.  Writes are keyed by (customer, call id):
the row remembers the id of the last call written to it, so a retried write
for the same call is a no-op.  Writes for one customer are serialised.
"""

import asyncio
import json
import logging
import os
import re
import time
from typing import Protocol

from salescall.errors import PermanentProviderError, ProviderError, TransientProviderError
from salescall.session import CustomerRecord

logger = logging.getLogger(__name__)

# Outcome field -> normalised sheet header.
OUTCOME_COLUMNS = {
    "status": "status",
    "lastCallDate": "lastcalldate",
    "callResult": "callresult",
    "appointmentDate": "appointmentdate",
    "email": "email",
    "notes": "notes",
    "callDuration": "callduration",
    "nextAction": "nextaction",
    "lastCallId": "lastcallid",
}

HEADERS = [
    "ID", "Name", "Phone", "Email", "Car Model", "Dealership", "Status",
    "Enquiry Date", "Last Call Date", "Call Result", "Appointment Date",
    "Notes", "Call Duration", "Next Action", "Last Call ID",
]


def normalize_header(header: str) -> str:
    return re.sub(r"[^a-z0-9]", "", header.lower())


def normalize_phone(phone: str) -> str:
    """Digits only, compared on the last ten so +1 prefixes don't matter."""
    digits = re.sub(r"\D", "", phone or "")
    return digits[-10:]


def column_letter(index: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA."""
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


class RecordStore(Protocol):
    async def get_customer(self, phone: str) -> CustomerRecord | None: ...

    async def update_outcome(self, customer_ref: str, call_id: str, fields: dict) -> bool: ...


class _PerCustomerLocks:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, customer_ref: str) -> asyncio.Lock:
        return self._locks.setdefault(customer_ref, asyncio.Lock())


class InMemoryRecordStore(_PerCustomerLocks):
    """Dict-backed store for local runs and tests."""

    def __init__(self, customers: list[CustomerRecord] | None = None):
        super().__init__()
        self.customers: dict[str, CustomerRecord] = {}
        self.outcomes: dict[str, dict] = {}
        self.last_call_ids: dict[str, str] = {}
        self.updates_applied = 0
        for customer in customers or []:
            self.add(customer)

    def add(self, customer: CustomerRecord) -> None:
        customer.found = True
        self.customers[customer.key or customer.phone] = customer

    async def get_customer(self, phone: str) -> CustomerRecord | None:
        wanted = normalize_phone(phone)
        for customer in self.customers.values():
            if wanted and normalize_phone(customer.phone) == wanted:
                return customer
        return None

    async def update_outcome(self, customer_ref: str, call_id: str, fields: dict) -> bool:
        async with self._lock_for(customer_ref):
            if self.last_call_ids.get(customer_ref) == call_id:
                logger.info("Outcome for %s/%s already recorded", customer_ref, call_id)
                return False
            self.outcomes.setdefault(customer_ref, {}).update(fields)
            self.last_call_ids[customer_ref] = call_id
            self.updates_applied += 1
            return True


class GoogleSheetsRecordStore(_PerCustomerLocks):
    """Customers tab of a Google Sheet, via a service account.

    The Sheets client is blocking, so every request runs in a worker thread
    bounded by ``timeout``.
    """

    SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

    def __init__(
        self,
        spreadsheet_id: str,
        credentials_path: str = "",
        credentials_json: str = "",
        tab_name: str = "Customers",
        timeout: float = 10.0,
        service=None,
    ):
        super().__init__()
        self.spreadsheet_id = spreadsheet_id
        self.credentials_path = credentials_path
        self.credentials_json = credentials_json
        self.tab_name = tab_name
        self.timeout = timeout
        self._service = service

    def _build_service(self):
        from google.oauth2 import service_account
        from googleapiclient.discovery import build

        if self.credentials_path and os.path.exists(self.credentials_path):
            creds = service_account.Credentials.from_service_account_file(
                self.credentials_path, scopes=self.SCOPES
            )
        else:
            info = json.loads(self.credentials_json or "{}")
            creds = service_account.Credentials.from_service_account_info(info, scopes=self.SCOPES)
        return build("sheets", "v4", credentials=creds, cache_discovery=False)

    def _values(self):
        if self._service is None:
            self._service = self._build_service()
        return self._service.spreadsheets().values()

    async def _run(self, fn, settle: bool = False):
        """Run blocking ``fn`` in a worker thread, bounded by ``timeout``.

        A thread that times out cannot be stopped.  With ``settle`` the call
        waits for it to finish before raising, so a caller holding a
        per-customer lock keeps it until the write has landed or failed.
        """
        job = asyncio.ensure_future(asyncio.to_thread(fn))
        try:
            return await asyncio.wait_for(asyncio.shield(job), timeout=self.timeout)
        except ProviderError:
            raise
        except asyncio.TimeoutError as e:
            if settle:
                await asyncio.wait([job])
                late_error = job.exception()
                if late_error is not None:
                    logger.warning("Late Sheets write failed after timeout: %s", late_error)
                else:
                    logger.warning("Late Sheets write landed after timeout")
            else:
                job.add_done_callback(_log_late_failure)
            raise TransientProviderError("sheets", f"timed out after {self.timeout:.0f}s") from e
        except Exception as e:
            raise _classify_sheets_error(e) from e

    def _read_rows(self) -> tuple[list[str], list[list[str]]]:
        result = self._values().get(
            spreadsheetId=self.spreadsheet_id, range=f"{self.tab_name}!A:Z"
        ).execute()
        rows = result.get("values", [])
        if not rows:
            return [], []
        return [normalize_header(h) for h in rows[0]], rows[1:]

    @staticmethod
    def _cell(headers: list[str], row: list[str], name: str) -> str:
        if name not in headers:
            return ""
        i = headers.index(name)
        return row[i].strip() if i < len(row) else ""

    def _find_row(self, headers, rows, customer_ref: str) -> tuple[int, list[str]] | None:
        wanted_phone = normalize_phone(customer_ref)
        for offset, row in enumerate(rows):
            if self._cell(headers, row, "id") == customer_ref:
                return offset + 2, row
            if wanted_phone and normalize_phone(self._cell(headers, row, "phone")) == wanted_phone:
                return offset + 2, row
        return None

    async def get_customer(self, phone: str) -> CustomerRecord | None:
        headers, rows = await self._run(self._read_rows)
        found = self._find_row(headers, rows, phone)
        if found is None:
            logger.info("No customer row for %s", phone)
            return None
        row_number, row = found
        return CustomerRecord(
            phone=self._cell(headers, row, "phone") or phone,
            key=self._cell(headers, row, "id"),
            name=self._cell(headers, row, "name"),
            car_model=self._cell(headers, row, "carmodel"),
            dealership=self._cell(headers, row, "dealership"),
            email=self._cell(headers, row, "email"),
            row=row_number,
            found=True,
        )

    async def update_outcome(self, customer_ref: str, call_id: str, fields: dict) -> bool:
        async with self._lock_for(customer_ref):
            return await self._run(lambda: self._write_outcome(customer_ref, call_id, fields), settle=True)

    def _write_outcome(self, customer_ref: str, call_id: str, fields: dict) -> bool:
        headers, rows = self._read_rows()
        if not headers:
            self._values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f"{self.tab_name}!A1",
                valueInputOption="RAW",
                body={"values": [HEADERS]},
            ).execute()
            logger.info("Added headers to empty %s tab", self.tab_name)
            headers = [normalize_header(h) for h in HEADERS]

        values = {**fields, "lastCallId": call_id}
        found = self._find_row(headers, rows, customer_ref)
        if found is None:
            self._append_customer(headers, customer_ref, values)
            return True

        row_number, row = found
        if self._cell(headers, row, "lastcallid") == call_id:
            logger.info("Outcome for %s/%s already recorded", customer_ref, call_id)
            return False

        data = []
        for key, value in values.items():
            header = OUTCOME_COLUMNS.get(key)
            if header is None or header not in headers:
                continue
            letter = column_letter(headers.index(header))
            data.append({"range": f"{self.tab_name}!{letter}{row_number}", "values": [[value]]})
        if "lastcallid" not in headers:
            logger.warning("%s tab has no 'Last Call ID' column; duplicate writes can't be detected", self.tab_name)

        self._values().batchUpdate(
            spreadsheetId=self.spreadsheet_id,
            body={"valueInputOption": "RAW", "data": data},
        ).execute()
        logger.info("Customer row %d updated for call %s (%d fields)", row_number, call_id, len(data))
        return True

    def _append_customer(self, headers: list[str], customer_ref: str, values: dict) -> None:
        """New row for a caller who wasn't in the sheet."""
        by_header = {OUTCOME_COLUMNS[k]: v for k, v in values.items() if k in OUTCOME_COLUMNS}
        by_header["id"] = f"CUST_{int(time.time())}"
        by_header["phone"] = customer_ref
        by_header.setdefault("status", "new")
        row = [by_header.get(h, "") for h in headers]
        self._values().append(
            spreadsheetId=self.spreadsheet_id,
            range=f"{self.tab_name}!A:Z",
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={"values": [row]},
        ).execute()
        logger.info("Appended new customer row for %s", customer_ref)


def _log_late_failure(job: asyncio.Future) -> None:
    if not job.cancelled() and job.exception() is not None:
        logger.warning("Late Sheets request failed after timeout: %s", job.exception())


def _classify_sheets_error(exc: Exception) -> ProviderError:
    status = getattr(getattr(exc, "resp", None), "status", None)
    if status is not None:
        status = int(status)
        if status >= 500 or status == 429:
            return TransientProviderError("sheets", str(exc), status)
        return PermanentProviderError("sheets", str(exc), status)
    if isinstance(exc, (ValueError, KeyError, FileNotFoundError)):
        return PermanentProviderError("sheets", f"{type(exc).__name__}: {exc}")
    return TransientProviderError("sheets", f"{type(exc).__name__}: {exc}")
