"""Lead matching strategies for compliance checks.

A matcher chain is an ordered list of strategies; the first strategy returning
at least one lead wins and later strategies are never consulted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from tenant_sync.errors import SyncError
from tenant_sync.normalize import mask, normalize_national_id, phone_tail
from tenant_sync.remote_store import eq

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckSubject:
    """What a compliance record tells us about the person it concerns."""

    record_id: str
    status: str
    national_id: str = ""
    phone: str = ""
    submission_id: str = ""
    tenant_id: str | None = None


class SubmissionLookup:
    """Finds the most recent form submission phone for a national ID."""

    def __init__(self, store: Any, *, table: str = "form_submissions") -> None:
        self._store = store
        self._table = table

    def phone_for(self, national_id: str) -> str:
        normalized = normalize_national_id(national_id)
        if not normalized:
            return ""
        try:
            rows = self._store.select(
                self._table,
                columns=["id", "contact_phone"],
                filters=[eq("contact_cpf", normalized)],
                order="created_at",
                descending=True,
                limit=1,
            )
        except SyncError as exc:
            logger.warning("submission_lookup_failed national_id=%s code=%s", mask(normalized), exc.code)
            return ""
        if not rows:
            return ""
        return str(rows[0].get("contact_phone") or "")


@dataclass
class MatchContext:
    leads: Any
    tenant_id: str | None
    submissions: SubmissionLookup | None = None


class NationalIdMatch:
    name = "national_id"

    def find(self, subject: CheckSubject, ctx: MatchContext) -> list[dict[str, Any]]:
        national_id = normalize_national_id(subject.national_id)
        if not national_id:
            return []
        return ctx.leads.find_by_national_id(tenant_id=ctx.tenant_id, national_id=national_id)


class DirectPhoneMatch:
    name = "phone"

    def find(self, subject: CheckSubject, ctx: MatchContext) -> list[dict[str, Any]]:
        tail = phone_tail(subject.phone)
        if not tail:
            return []
        return ctx.leads.find_by_phone_tail(tenant_id=ctx.tenant_id, tail=tail)


class SubmissionIdMatch:
    name = "submission_id"

    def find(self, subject: CheckSubject, ctx: MatchContext) -> list[dict[str, Any]]:
        if not subject.submission_id:
            return []
        return ctx.leads.find_by_submission_id(tenant_id=ctx.tenant_id, submission_id=subject.submission_id)


class SubmissionPhoneMatch:
    """National ID -> latest client submission -> contact phone -> leads."""

    name = "submission_phone"

    def find(self, subject: CheckSubject, ctx: MatchContext) -> list[dict[str, Any]]:
        if ctx.submissions is None or not subject.national_id:
            return []
        tail = phone_tail(ctx.submissions.phone_for(subject.national_id))
        if not tail:
            return []
        return ctx.leads.find_by_phone_tail(tenant_id=ctx.tenant_id, tail=tail)


class MatcherChain:
    def __init__(self, strategies: list[Any]) -> None:
        if not strategies:
            raise ValueError("matcher chain needs at least one strategy")
        self.strategies = list(strategies)

    def match(self, subject: CheckSubject, ctx: MatchContext) -> tuple[str | None, list[dict[str, Any]]]:
        for strategy in self.strategies:
            leads = strategy.find(subject, ctx)
            if leads:
                logger.info(
                    "lead_matched record=%s strategy=%s leads=%s",
                    subject.record_id,
                    strategy.name,
                    len(leads),
                )
                return strategy.name, leads
        return None, []


def client_result_chain() -> MatcherChain:
    return MatcherChain([NationalIdMatch(), DirectPhoneMatch()])


def master_check_chain() -> MatcherChain:
    return MatcherChain([NationalIdMatch(), SubmissionIdMatch(), SubmissionPhoneMatch()])
