from typing import Any, Dict, Mapping, Optional, TypedDict


class CustomerView(TypedDict):
    id: None
    name: str
    email: str
    phone: str
    nik: Optional[str]


def customer_view(form_data: Optional[Mapping[str, Any]]) -> CustomerView:
    """Registrant as read from the captured form, with display fallbacks."""
    data: Dict[str, Any] = dict(form_data or {})
    return {
        "id": None,
        "name": data.get("name") or "Unknown",
        "email": data.get("email") or "N/A",
        "phone": data.get("phone") or "N/A",
        "nik": data.get("nik"),
    }
