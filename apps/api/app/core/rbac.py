from collections.abc import Iterable

from fastapi import HTTPException, status

ADMIN_ROLE = "admin"


def can_access(permissions: Iterable[str], resource_key: str) -> bool:
    """Exact grant, any parent key grant (``crm.settings`` covers ``crm.settings.lead_fields``) or admin."""
    granted = {str(item) for item in permissions}
    if ADMIN_ROLE in granted or resource_key in granted:
        return True
    parts = resource_key.split(".")
    return any(".".join(parts[:index]) in granted for index in range(1, len(parts)))


def require_access(permissions: Iterable[str], resource_key: str) -> None:
    if not can_access(permissions, resource_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {resource_key}")
