from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from wastewatch.app.detection.config import DetectionConfig, build_config, env_overrides, field_names
from wastewatch.app.detection.errors import ConfigInvalid
from wastewatch.app.models import DetectionSettings, utcnow
from wastewatch.app.services import audit_service

logger = logging.getLogger(__name__)

SETTINGS_KEY = "default"


def stored_overrides(db: Session) -> Dict[str, Any]:
    row = db.get(DetectionSettings, SETTINGS_KEY)
    if row is None or not row.overrides_json:
        return {}
    return dict(row.overrides_json)


def load_detection_config(db: Session, *, environ: Optional[Mapping[str, str]] = None) -> DetectionConfig:
    """defaults < WASTEWATCH_* environment < stored overrides. Raises ConfigInvalid."""
    return build_config(env_overrides(environ), stored_overrides(db))


def update_overrides(
    db: Session,
    changes: Mapping[str, Any],
    *,
    actor: str = "user",
    replace: bool = False,
) -> DetectionConfig:
    """
    Merge `changes` into the stored overrides. A None value drops that
    override. The merged result is validated before anything is written.
    """
    unknown = sorted(set(changes) - set(field_names()))
    if unknown:
        raise ConfigInvalid(
            "unknown detection setting(s): " + ", ".join(unknown),
            errors=[f"{name}: unknown setting" for name in unknown],
        )

    before = stored_overrides(db)
    merged = {} if replace else dict(before)
    for name, value in changes.items():
        if value is None:
            merged.pop(name, None)
        else:
            merged[name] = value

    config = build_config(env_overrides(), merged)

    row = db.get(DetectionSettings, SETTINGS_KEY)
    if row is None:
        row = DetectionSettings(key=SETTINGS_KEY, overrides_json={})
        db.add(row)
    row.overrides_json = merged
    row.updated_at = utcnow()
    audit_service.log_audit_event(
        db,
        event_type="detection_config_updated",
        actor=actor,
        entity_type="detection_settings",
        entity_id=SETTINGS_KEY,
        before=before,
        after=merged,
    )
    db.flush()
    logger.info("detection overrides updated: %s", sorted(merged))
    return config
