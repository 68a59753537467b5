"""
WhatsApp message templates.
"""
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional

from ..config import settings
from ..errors import UnknownEventType
from .events import EventType


MONTHS_ID = [
    "Januari", "Februari", "Maret", "April", "Mei", "Juni",
    "Juli", "Agustus", "September", "Oktober", "November", "Desember",
]


def format_date_id(value: Optional[Any]) -> str:
    """Format a date as e.g. '5 Maret 2026'."""
    if value is None:
        value = date.today()
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value[:10])
        except ValueError:
            return value
    if isinstance(value, datetime):
        value = value.date()
    return f"{value.day} {MONTHS_ID[value.month - 1]} {value.year}"


class MessageGenerator:
    def __init__(self, base_url: Optional[str] = None, institution: Optional[str] = None):
        self.base_url = (base_url or settings.public_base_url).rstrip("/")
        self.institution = institution or settings.institution_name

    def generate(self, event_type: str, data: Dict[str, Any]) -> str:
        if event_type == EventType.REQUEST_CREATED.value:
            return self.request_created(data)
        if event_type == EventType.APPROVAL_NEEDED.value:
            return self.approval_needed(data)
        if event_type == EventType.REORDER_ALERT.value:
            return self.reorder_alert(data)
        raise UnknownEventType(event_type)

    def request_created(self, data: Dict[str, Any]) -> str:
        return (
            "🔔 PERMINTAAN BARU\n\n"
            f"No: {data.get('request_no', 'N/A')}\n"
            f"Pemohon: {data.get('user_name', 'N/A')}\n"
            f"Departemen: {data.get('department') or 'N/A'}\n"
            f"Tanggal: {format_date_id(data.get('request_date'))}\n\n"
            "Items:\n"
            f"{self.format_items(data.get('items') or [])}\n\n"
            "Silakan cek dan proses permintaan.\n\n"
            f"Link: {self.request_url(data)}\n\n"
            f"{self.footer()}"
        )

    def approval_needed(self, data: Dict[str, Any]) -> str:
        return (
            "✋ PERMINTAAN BUTUH APPROVAL\n\n"
            f"No: {data.get('request_no', 'N/A')}\n"
            f"Pemohon: {data.get('user_name', 'N/A')}\n"
            f"Departemen: {data.get('department') or 'N/A'}\n"
            f"Level: Level {data.get('level', 'N/A')} ({data.get('role', '-')})\n\n"
            "Items:\n"
            f"{self.format_items(data.get('items') or [])}\n\n"
            "Mohon review dan approval.\n\n"
            f"Link: {self.request_url(data)}\n\n"
            f"{self.footer()}"
        )

    def reorder_alert(self, data: Dict[str, Any]) -> str:
        unit = data.get("unit") or "unit"
        current = data.get("current_stock", 0)
        minimal = data.get("minimal_stock", 0)
        deficit = data.get("deficit", minimal - current)
        return (
            "⚠️ REORDER POINT ALERT\n\n"
            "Barang berikut di bawah stok minimal:\n\n"
            f"{data.get('item_name', 'N/A')}\n"
            f"• Stok saat ini: {current} {unit}\n"
            f"• Stok minimal: {minimal} {unit}\n"
            f"• Kurang: {deficit} {unit}\n\n"
            "Silakan lakukan pembelian.\n\n"
            f"Link: {self.stock_url(data)}\n\n"
            f"{self.footer()}"
        )

    @staticmethod
    def format_items(items: Iterable[Dict[str, Any]]) -> str:
        lines = [f"• {i.get('item_name')} - {i.get('quantity')} {i.get('unit')}" for i in items]
        if not lines:
            return "• Tidak ada items"
        return "\n".join(lines)

    def request_url(self, data: Dict[str, Any]) -> str:
        path = "office-requests" if data.get("request_kind") == "office" else "item-requests"
        return f"{self.base_url}/{path}/{data.get('request_id', '')}"

    def stock_url(self, data: Dict[str, Any]) -> str:
        path = "office-supplies" if data.get("entity_kind") == "office_supply" else "items"
        return f"{self.base_url}/{path}"

    def footer(self) -> str:
        return f"---\nSistem Manajemen Aset & Persediaan\n{self.institution}"
