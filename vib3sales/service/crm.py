from __future__ import annotations

import csv
import io
import re
import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from vib3sales.logging import get_logger
from vib3sales.service.errors import ValidationError
from vib3sales.storage.errors import ConstraintViolation
from vib3sales.storage.models import (
    CrmLead,
    LeadPriority,
    LeadSource,
    LeadStatus,
    to_iso,
    utcnow,
)

logger = get_logger(__name__)

CSV_COLUMNS = (
    "source",
    "name",
    "subtitle",
    "status",
    "priority",
    "tags",
    "nextFollowUpAt",
    "lastContactedAt",
    "contactEmail",
    "contactPhone",
    "websiteUrl",
    "notes",
    "createdAt",
    "updatedAt",
)

PATCHABLE_FIELDS = (
    "status",
    "priority",
    "tags",
    "notes",
    "next_follow_up_at",
    "last_contacted_at",
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def export_filename(display_name: Optional[str]) -> str:
    slug = re.sub(r"\s+", "_", (display_name or "").strip()) or "agent"
    slug = re.sub(r"[^A-Za-z0-9_-]", "", slug) or "agent"
    return f"vib3_saved_leads_{slug}.csv"


def new_lead_id(source: LeadSource) -> str:
    return f"{source.lead_id_prefix}{source.source_id}_{secrets.token_hex(4)}"


class CrmService:
    """Per-user saved leads with merge-on-save reconciliation.

    A user holds at most one lead per (source kind, source id). Saving the
    same source again refreshes the snapshot and keeps every CRM field the
    user has edited since.
    """

    def __init__(self, store, *, max_tags: int = 12) -> None:
        self.store = store
        self.max_tags = max_tags

    @staticmethod
    def _next_updated_at(previous: datetime) -> datetime:
        # updated_at must advance even when the clock has not
        now = utcnow()
        if now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    def save(
        self,
        owner_id: str,
        source: LeadSource,
        *,
        status: Optional[LeadStatus] = None,
        priority: Optional[LeadPriority] = None,
    ) -> CrmLead:
        existing = self.store.find_lead_by_source(owner_id, source.kind, source.source_id)
        if existing is not None:
            return self._merge(existing, source)

        now = utcnow()
        lead = CrmLead(
            id=new_lead_id(source),
            owner_user_id=owner_id,
            source=source,
            status=status or LeadStatus.NEW,
            priority=priority or LeadPriority.MEDIUM,
            tags=[],
            notes="",
            created_at=now,
            updated_at=now,
        )
        try:
            saved = self.store.insert_lead(lead)
        except ConstraintViolation:
            # lost an insert race; the winner's row gets merged instead
            existing = self.store.find_lead_by_source(owner_id, source.kind, source.source_id)
            if existing is None:
                raise
            return self._merge(existing, source)
        logger.info(
            "crm_lead_created",
            user_id=owner_id,
            lead_id=saved.id,
            source=source.kind,
            source_id=source.source_id,
        )
        return saved

    def _merge(self, existing: CrmLead, source: LeadSource) -> CrmLead:
        merged_source = type(existing.source)(
            source_id=existing.source.source_id,
            data={**existing.source.data, **source.data},
        )
        merged = replace(
            existing,
            source=merged_source,
            updated_at=self._next_updated_at(existing.updated_at),
        )
        updated = self.store.update_lead(merged)
        logger.info(
            "crm_lead_merged",
            user_id=existing.owner_user_id,
            lead_id=existing.id,
            source=source.kind,
        )
        return updated or merged

    def unsave(self, owner_id: str, kind: str, source_id: str) -> None:
        if self.store.delete_lead_by_source(owner_id, kind, source_id):
            logger.info("crm_lead_unsaved", user_id=owner_id, source=kind, source_id=source_id)

    def _normalize_tags(self, tags: Optional[List[str]]) -> List[str]:
        normalized: List[str] = []
        for tag in tags or []:
            cleaned = str(tag).strip()
            if cleaned and cleaned not in normalized:
                normalized.append(cleaned)
        # extra tags past the cap are dropped
        return normalized[: self.max_tags]

    def patch(self, owner_id: str, lead_id: str, fields: Dict[str, Any]) -> Optional[CrmLead]:
        """Apply CRM-field changes; the source snapshot is never touched here.

        Keys absent from ``fields`` are left alone. An explicit None clears a
        date. Returns None when the lead is missing or owned by someone else.
        """
        unknown = set(fields) - set(PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(
                "Unsupported lead fields", detail={"fields": sorted(unknown)}
            )
        lead = self.store.get_lead(owner_id, lead_id)
        if lead is None:
            return None

        changes: Dict[str, Any] = {}
        try:
            if fields.get("status") is not None:
                changes["status"] = LeadStatus(fields["status"])
            if fields.get("priority") is not None:
                changes["priority"] = LeadPriority(fields["priority"])
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "status/priority"}) from exc
        if "tags" in fields:
            changes["tags"] = self._normalize_tags(fields["tags"])
        if "notes" in fields:
            changes["notes"] = fields["notes"] or ""
        for date_field in ("next_follow_up_at", "last_contacted_at"):
            if date_field in fields:
                changes[date_field] = _as_utc(fields[date_field])

        updated = replace(lead, **changes, updated_at=self._next_updated_at(lead.updated_at))
        result = self.store.update_lead(updated)
        logger.info(
            "crm_lead_patched",
            user_id=owner_id,
            lead_id=lead_id,
            fields=sorted(changes),
        )
        return result

    def delete(self, owner_id: str, lead_id: str) -> None:
        if self.store.delete_lead(owner_id, lead_id):
            logger.info("crm_lead_deleted", user_id=owner_id, lead_id=lead_id)

    def list(
        self,
        owner_id: str,
        *,
        status: Optional[LeadStatus] = None,
        source: Optional[str] = None,
        q: Optional[str] = None,
    ) -> List[CrmLead]:
        leads = self.store.list_leads(owner_id)
        if status is not None:
            leads = [lead for lead in leads if lead.status == status]
        if source:
            leads = [lead for lead in leads if lead.source.kind == source]
        query = (q or "").strip().lower()
        if query:
            leads = [lead for lead in leads if query in self._haystack(lead)]
        return sorted(leads, key=lambda lead: lead.updated_at, reverse=True)

    @staticmethod
    def _haystack(lead: CrmLead) -> str:
        parts = [
            lead.source.display_name(),
            lead.source.subtitle(),
            lead.source.contact_email(),
            lead.source.contact_phone(),
            lead.source.description(),
            *lead.tags,
            lead.notes,
        ]
        return " ".join(part for part in parts if part).lower()

    def export_rows(self, owner_id: str) -> List[List[str]]:
        rows = []
        for lead in self.list(owner_id):
            src = lead.source
            rows.append(
                [
                    src.kind,
                    src.display_name(),
                    src.subtitle(),
                    lead.status.value,
                    lead.priority.value,
                    "|".join(lead.tags),
                    to_iso(lead.next_follow_up_at),
                    to_iso(lead.last_contacted_at),
                    src.contact_email(),
                    src.contact_phone(),
                    src.website_url(),
                    lead.notes,
                    to_iso(lead.created_at),
                    to_iso(lead.updated_at),
                ]
            )
        return rows

    def export_csv(self, owner_id: str) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        writer.writerows(self.export_rows(owner_id))
        # rows are joined by newlines with no trailing terminator
        return buffer.getvalue().rstrip("\n")


__all__ = ["CSV_COLUMNS", "CrmService", "export_filename", "new_lead_id", "to_iso"]
