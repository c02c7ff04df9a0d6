# services/archive_service.py - Retiring superseded calibration records
#
# Two retirement strategies behind one interface, chosen per instrument type
# (domain.instrument_types):
#   copy_delete - copy into archived_calibration_records, delete the original
#   soft_tag    - set archived_at/archived_by in place; restorable
# archive_superseded never raises for store failures: they are logged and
# reported in ArchiveResult.error so the new record can still be saved.

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from config import DEFAULT_SETTINGS, EngineSettings
from domain.errors import ArchivalFailure, NotFoundError, ValidationError
from domain.instrument_types import ArchiveStrategy, get_profile, parse_instrument_type
from domain.models import ArchiveResult, CalibrationRecord, canonical_key, parse_iso_date
from services.identity import resolve_actor

if TYPE_CHECKING:
    from database import CalibrationRepository

logger = logging.getLogger(__name__)

ARCHIVE_REASON_NEW_CALIBRATION = "new_calibration"
ARCHIVE_REASON_NEWER_ON_FILE = "newer_calibration_on_file"


class CopyDeleteStrategy:
    kind = ArchiveStrategy.COPY_DELETE
    supports_restore = False

    def retire(self, repo: "CalibrationRepository", records: list[CalibrationRecord], actor: str,
               reason: str = ARCHIVE_REASON_NEW_CALIBRATION) -> int:
        return repo.move_to_archive([r.id for r in records], actor, reason)

    def list_archived(self, repo, instrument_type, instrument_key=None) -> list[CalibrationRecord]:
        return repo.list_archived_copies(instrument_type, instrument_key)

    def stats(self, repo, instrument_type) -> dict:
        return repo.archived_copy_stats(instrument_type)


class SoftTagStrategy:
    kind = ArchiveStrategy.SOFT_TAG
    supports_restore = True

    def retire(self, repo: "CalibrationRepository", records: list[CalibrationRecord], actor: str,
               reason: str = ARCHIVE_REASON_NEW_CALIBRATION) -> int:
        return repo.tag_archived([r.id for r in records], actor, reason)

    def list_archived(self, repo, instrument_type, instrument_key=None) -> list[CalibrationRecord]:
        return repo.list_tagged_archived(instrument_type, instrument_key)

    def stats(self, repo, instrument_type) -> dict:
        return repo.tagged_archive_stats(instrument_type)


_STRATEGIES = {
    ArchiveStrategy.COPY_DELETE: CopyDeleteStrategy(),
    ArchiveStrategy.SOFT_TAG: SoftTagStrategy(),
}


def strategy_for(instrument_type):
    return _STRATEGIES[get_profile(instrument_type).archive_strategy]


def archive_superseded(
    repo: "CalibrationRepository",
    instrument_key: str,
    new_record_date,
    actor: str | None = None,
    instrument_type=None,
) -> ArchiveResult:
    """
    Retire every active record of the instrument dated strictly before
    new_record_date. Records on or after that date stay active.

    Raises ValidationError for a bad date and NotFoundError when the type is
    not given and the instrument does not exist. Store failures are returned
    in ArchiveResult.error instead of raised.
    """
    key = canonical_key(instrument_key)
    new_date = parse_iso_date(new_record_date, "new record date")
    if new_date is None:
        raise ValidationError("New record date is required")
    if instrument_type is None:
        instrument_type = repo.get_instrument_by_key(key).instrument_type
    t = parse_instrument_type(instrument_type)
    strategy = strategy_for(t)
    result = ArchiveResult(instrument_key=key, strategy=strategy.kind)

    try:
        actor = resolve_actor(repo, actor)
        stale = repo.list_active_before(key, t, new_date)
        if not stale:
            return result
        result.archived_count = strategy.retire(repo, stale, actor)
        if result.archived_count != len(stale):
            raise ArchivalFailure(
                key, f"expected to archive {len(stale)} record(s), archived {result.archived_count}"
            )
        logger.info(
            "Archived %d %s calibration record(s) for %s dated before %s (%s)",
            result.archived_count, t.value, key, new_date.isoformat(), strategy.kind.value,
        )
    except Exception as e:
        failure = e if isinstance(e, ArchivalFailure) else ArchivalFailure(key, str(e))
        result.error = str(failure)
        logger.error("Archiving superseded records failed for %s: %s", key, failure, exc_info=True)
    return result


def retire_if_backdated(
    repo: "CalibrationRepository",
    record: CalibrationRecord,
    actor: str | None = None,
) -> bool:
    """
    Archive a just-stored record when the instrument already has an active
    record dated after it, so a late entry of an older calibration does not
    leave two active records. Returns True when the record was archived.
    Store failures are logged and leave the record active.
    """
    key = canonical_key(record.instrument_key)
    newer = [
        r for r in repo.list_calibrations(key, active_only=True, instrument_type=record.instrument_type)
        if r.id != record.id and r.calibration_date is not None
        and r.calibration_date > record.calibration_date
    ]
    if not newer:
        return False
    strategy = strategy_for(record.instrument_type)
    try:
        retired = strategy.retire(repo, [record], resolve_actor(repo, actor), ARCHIVE_REASON_NEWER_ON_FILE)
    except Exception as e:
        logger.error("Could not archive backdated record %s for %s: %s", record.id, key, e, exc_info=True)
        return False
    if retired:
        logger.info(
            "Archived backdated %s calibration %s for %s dated %s; %s is newer (%s)",
            record.instrument_type.value, record.id, key, record.calibration_date.isoformat(),
            newer[0].calibration_date.isoformat(), strategy.kind.value,
        )
    return bool(retired)


def restore_calibration(
    repo: "CalibrationRepository",
    record_id: int,
    actor: str | None = None,
    instrument_type=None,
) -> CalibrationRecord:
    """
    Return a soft-tagged record to the active set, recording who restored it
    and when. Copy-then-delete records cannot be restored. When
    instrument_type is given the record must belong to that type.
    """
    record = repo.get_calibration(record_id)
    if record is None:
        raise NotFoundError(f"Calibration record not found: {record_id}")
    if instrument_type is not None and parse_instrument_type(instrument_type) != record.instrument_type:
        raise NotFoundError(f"No {parse_instrument_type(instrument_type).value} calibration record {record_id}")
    strategy = strategy_for(record.instrument_type)
    if not strategy.supports_restore:
        raise ValidationError(f"{record.instrument_type.value} calibration records cannot be restored")
    if not record.is_archived:
        raise ValidationError(f"Calibration record {record_id} is not archived")
    restored = repo.restore_tagged(record_id, resolve_actor(repo, actor))
    logger.info("Restored calibration record %d for %s", record_id, restored.instrument_key)
    return restored


def list_archived(repo: "CalibrationRepository", instrument_type, instrument_key: str | None = None):
    """Archived records for a type (optionally one instrument), newest archival first."""
    t = parse_instrument_type(instrument_type)
    return strategy_for(t).list_archived(repo, t, instrument_key)


def archive_stats(repo: "CalibrationRepository", instrument_type) -> dict:
    t = parse_instrument_type(instrument_type)
    strategy = strategy_for(t)
    raw = strategy.stats(repo, t)
    return {
        "instrument_type": t.value,
        "strategy": strategy.kind.value,
        "total_archived": raw.get("total") or 0,
        "total_active": repo.count_active(t),
        "oldest_archive": raw.get("oldest"),
        "newest_archive": raw.get("newest"),
    }


def purge_archived(
    repo: "CalibrationRepository",
    instrument_type,
    older_than_days: Optional[int] = None,
    actor: str | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
    now: Optional[datetime] = None,
) -> int:
    """Permanently delete soft-tagged records archived more than N days ago. Returns count."""
    t = parse_instrument_type(instrument_type)
    if strategy_for(t).kind != ArchiveStrategy.SOFT_TAG:
        raise ValidationError(f"{t.value} archives are kept in the archive table and are not purged")
    days = settings.archive_retention_days if older_than_days is None else older_than_days
    if days < 0:
        raise ValidationError("older_than_days must be >= 0")
    now = now or datetime.now(timezone.utc)
    cutoff = (now - timedelta(days=days)).strftime("%Y-%m-%d %H:%M:%S")
    purged = repo.purge_tagged_archived(t, cutoff, resolve_actor(repo, actor))
    logger.info("Purged %d archived %s record(s) archived before %s", purged, t.value, cutoff)
    return purged
