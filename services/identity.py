# services/identity.py - Actor resolution for audit fields
#
# Actor is the operator name stored in settings, or "local" when none is set.
# archivedBy / restoredBy / updatedBy all come from here when the caller does
# not pass an explicit actor.

import logging
import sqlite3

logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "local"


def get_current_user_id(repo=None) -> str:
    """
    Return local operator name from settings, or "local" if unavailable.
    """
    if repo is None:
        return DEFAULT_ACTOR
    try:
        name = repo.get_setting("operator_name", "")
    except sqlite3.Error as e:
        logger.warning("Could not read operator_name setting: %s", e)
        return DEFAULT_ACTOR
    return (name or "").strip() or DEFAULT_ACTOR


def resolve_actor(repo, actor: str | None = None) -> str:
    """Explicit actor wins; otherwise the configured operator."""
    if actor is not None and str(actor).strip():
        return str(actor).strip()
    return get_current_user_id(repo)
