from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.crm.models import CRMFieldDefinition, CRMFieldOption, CRMFormSection


logger = logging.getLogger("app.crm.seed")

SOURCE_OPTIONS = [
    ("website", "Website"),
    ("social_media", "Social Media"),
    ("referral", "Referral"),
    ("cold_call", "Cold Call"),
    ("email", "Email"),
    ("event", "Event"),
    ("other", "Other"),
]

DEFAULT_SECTIONS: dict[str, list[dict[str, Any]]] = {
    "lead": [
        {
            "section_key": "contact_information",
            "name": "Contact Information",
            "icon": "user",
            "gradient": "bg-gradient-to-br from-blue-600 to-indigo-500",
            "sort_order": 1,
        },
        {
            "section_key": "lead_details",
            "name": "Lead Details",
            "icon": "briefcase",
            "gradient": "bg-gradient-to-br from-purple-600 to-pink-500",
            "sort_order": 2,
        },
    ],
    "investor": [
        {
            "section_key": "investor_information",
            "name": "Investor Information",
            "icon": "user",
            "gradient": "bg-gradient-to-br from-emerald-600 to-teal-500",
            "sort_order": 1,
        },
        {
            "section_key": "investment_details",
            "name": "Investor Details",
            "icon": "briefcase",
            "gradient": "bg-gradient-to-r from-emerald-50 to-teal-50",
            "sort_order": 2,
        },
    ],
}

DEFAULT_SYSTEM_FIELDS: dict[str, list[dict[str, Any]]] = {
    "lead": [
        {
            "name": "source",
            "label": "Source",
            "is_required": True,
            "section_key": "lead_details",
            "options": SOURCE_OPTIONS,
        },
        {
            "name": "status",
            "label": "Status",
            "is_required": True,
            "section_key": "lead_details",
            "options": [
                ("new", "New"),
                ("contacted", "Contacted"),
                ("qualified", "Qualified"),
                ("proposal", "Proposal"),
                ("negotiation", "Negotiation"),
                ("won", "Won"),
                ("lost", "Lost"),
            ],
        },
        {
            "name": "priority",
            "label": "Priority",
            "is_required": False,
            "section_key": "lead_details",
            "options": [("low", "Low"), ("medium", "Medium"), ("high", "High"), ("urgent", "Urgent")],
        },
    ],
    "investor": [
        {
            "name": "source",
            "label": "Source",
            "is_required": True,
            "section_key": "investor_information",
            "options": [*SOURCE_OPTIONS, ("telegram", "Telegram"), ("whatsapp", "WhatsApp")],
        },
        {
            "name": "status",
            "label": "Status",
            "is_required": False,
            "section_key": "investment_details",
            "options": [
                ("potential", "Potential"),
                ("contacted", "Contacted"),
                ("interested", "Interested"),
                ("committed", "Committed"),
                ("active", "Active"),
                ("inactive", "Inactive"),
            ],
        },
        {
            "name": "priority",
            "label": "Priority",
            "is_required": False,
            "section_key": "investment_details",
            "options": [("low", "Low"), ("normal", "Normal"), ("high", "High"), ("urgent", "Urgent")],
        },
    ],
}


def seed_defaults(session: Session) -> dict[str, int]:
    """Create missing default sections and system fields. Existing rows are left as they are."""
    created = {"sections": 0, "fields": 0}
    for entity_type, sections in DEFAULT_SECTIONS.items():
        for spec in sections:
            exists = session.scalar(
                select(CRMFormSection.id).where(
                    and_(CRMFormSection.entity_type == entity_type, CRMFormSection.section_key == spec["section_key"])
                )
            )
            if exists is not None:
                continue
            session.add(CRMFormSection(entity_type=entity_type, is_visible=True, is_default_open=True, **spec))
            created["sections"] += 1

    for entity_type, fields in DEFAULT_SYSTEM_FIELDS.items():
        for sort_order, spec in enumerate(fields, start=1):
            exists = session.scalar(
                select(CRMFieldDefinition.id).where(
                    and_(CRMFieldDefinition.entity_type == entity_type, CRMFieldDefinition.name == spec["name"])
                )
            )
            if exists is not None:
                continue
            definition = CRMFieldDefinition(
                entity_type=entity_type,
                name=spec["name"],
                label=spec["label"],
                type="select",
                is_required=spec["is_required"],
                is_active=True,
                is_system_field=True,
                sort_order=sort_order,
                section_key=spec["section_key"],
            )
            definition.options = [
                CRMFieldOption(value=value, label=label, sort_order=index, is_active=True)
                for index, (value, label) in enumerate(spec["options"])
            ]
            session.add(definition)
            created["fields"] += 1

    session.commit()
    if created["sections"] or created["fields"]:
        logger.info("crm.seed.applied", extra={"operation": "seed", "row_count": created["sections"] + created["fields"]})
    return created
