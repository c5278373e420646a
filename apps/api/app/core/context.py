from dataclasses import dataclass

from starlette.requests import Request

_CRM_PREFIX = ("api", "crm")
_PER_ENTITY_SECTIONS = {"settings", "import", "export"}
_RECORD_COLLECTIONS = {"leads": "lead", "investors": "investor"}


@dataclass
class RequestContext:
    correlation_id: str
    route_group: str | None
    entity_type: str | None
    user_id: str | None = None


def resolve_route_scope(path: str) -> tuple[str | None, str | None]:
    """Return ``(route_group, entity_type)`` for a CRM path.

    Settings, import and export routes are grouped per entity type
    (``/api/crm/settings/lead/fields`` -> ``settings.lead``); record routes are
    grouped by collection (``/api/crm/leads/7`` -> ``leads``). Paths outside
    ``/api/crm`` have no group.
    """
    parts = [part for part in path.split("/") if part]
    if tuple(parts[:2]) != _CRM_PREFIX:
        return None, None
    if len(parts) < 3:
        return "crm", None

    section = parts[2]
    if section in _PER_ENTITY_SECTIONS and len(parts) >= 4:
        entity_type = parts[3] if parts[3] in _RECORD_COLLECTIONS.values() else None
        return f"{section}.{parts[3]}", entity_type
    return section, _RECORD_COLLECTIONS.get(section)


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if context is None:
        route_group, entity_type = resolve_route_scope(request.url.path)
        context = RequestContext(
            correlation_id=getattr(request.state, "correlation_id", None) or "",
            route_group=route_group,
            entity_type=entity_type,
        )
    return context

