from __future__ import annotations

import pytest
from fastapi import HTTPException

from app.core.rbac import can_access, require_access


@pytest.mark.parametrize(
    ("permissions", "resource_key", "expected"),
    [
        ({"crm.leads"}, "crm.leads", True),
        ({"crm.settings"}, "crm.settings.lead_fields", True),
        ({"crm"}, "crm.settings.investor_fields", True),
        ({"admin"}, "crm.import_export", True),
        ({"crm.settings.lead_fields"}, "crm.settings.investor_fields", False),
        ({"crm.settings.lead_fields"}, "crm.settings", False),
        ({"crm.lead"}, "crm.leads", False),
        (set(), "crm.leads", False),
    ],
)
def test_can_access(permissions: set[str], resource_key: str, expected: bool) -> None:
    assert can_access(permissions, resource_key) is expected


def test_require_access_raises_forbidden() -> None:
    require_access(["crm.investors"], "crm.investors")
    with pytest.raises(HTTPException) as exc_info:
        require_access(["crm.investors"], "crm.leads")
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "Missing permission: crm.leads"
