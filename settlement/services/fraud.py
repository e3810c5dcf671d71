# settlement/services/fraud.py
"""
Velocity review over the attribution and commission ledgers.
Read-only: it flags candidates for an administrator and never voids or freezes anything.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.crud import affiliate as crud_affiliate
from settlement.crud import referral as crud_referral
from settlement.db.session import SessionLocal

logger = logging.getLogger(__name__)


def _or_default(value: Optional[int], default: int) -> int:
    return default if value is None else value


def find_velocity_candidates(
    db: Session,
    window_minutes: Optional[int] = None,
    max_attributions_per_affiliate: Optional[int] = None,
    max_commissions_per_affiliate: Optional[int] = None,
    max_attributions_per_ip: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    # An explicit 0 is a real threshold; only None falls back to settings
    window_minutes = _or_default(window_minutes, settings.FRAUD_WINDOW_MINUTES)
    attribution_threshold = _or_default(max_attributions_per_affiliate, settings.FRAUD_MAX_ATTRIBUTIONS_PER_AFFILIATE)
    commission_threshold = _or_default(max_commissions_per_affiliate, settings.FRAUD_MAX_COMMISSIONS_PER_AFFILIATE)
    ip_threshold = _or_default(max_attributions_per_ip, settings.FRAUD_MAX_ATTRIBUTIONS_PER_IP)

    now = now or datetime.now(timezone.utc)
    since = now - timedelta(minutes=window_minutes)

    flagged: dict[int, dict] = {}

    for affiliate_id, count in crud_referral.count_attributions_by_affiliate_since(db, since):
        if count >= attribution_threshold:
            entry = flagged.setdefault(affiliate_id, {"affiliate_id": affiliate_id, "attributions": 0, "commissions": 0, "reasons": []})
            entry["attributions"] = count
            entry["reasons"].append("attribution_velocity")

    for affiliate_id, count in crud_affiliate.count_commissions_by_affiliate_since(db, since):
        if count >= commission_threshold:
            entry = flagged.setdefault(affiliate_id, {"affiliate_id": affiliate_id, "attributions": 0, "commissions": 0, "reasons": []})
            entry["commissions"] = count
            entry["reasons"].append("commission_velocity")

    ips = [
        {"ip_address": ip, "attributions": count, "distinct_affiliates": affiliates}
        for ip, count, affiliates in crud_referral.count_attributions_by_ip_since(db, since)
        if count >= ip_threshold
    ]

    if flagged or ips:
        logger.warning(
            f"Velocity review over the last {window_minutes} min flagged "
            f"{len(flagged)} affiliate(s) and {len(ips)} IP address(es)."
        )

    return {
        "window_minutes": window_minutes,
        "since": since,
        "affiliates": sorted(flagged.values(), key=lambda entry: entry["affiliate_id"]),
        "ip_addresses": sorted(ips, key=lambda entry: -entry["attributions"]),
    }


async def velocity_review_task():
    """Scheduled job: surfaces velocity candidates in the logs for the on-call admin."""
    logger.info("--- Starting scheduled job: Affiliate Velocity Review ---")
    try:
        with SessionLocal() as db:
            report = find_velocity_candidates(db)
        for entry in report["affiliates"]:
            logger.warning(
                f"Velocity candidate: affiliate {entry['affiliate_id']} "
                f"({entry['attributions']} attributions, {entry['commissions']} commissions; {', '.join(entry['reasons'])})."
            )
        for entry in report["ip_addresses"]:
            logger.warning(
                f"Velocity candidate: IP {entry['ip_address']} "
                f"({entry['attributions']} attributions across {entry['distinct_affiliates']} affiliates)."
            )
    except Exception as e:
        logger.error(f"Velocity review failed: {e}", exc_info=True)
    logger.info("--- Finished scheduled job: Affiliate Velocity Review ---")
