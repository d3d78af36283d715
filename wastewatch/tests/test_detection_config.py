import pytest

from wastewatch.app.detection.config import DetectionConfig, build_config, env_overrides
from wastewatch.app.detection.errors import ConfigInvalid
from wastewatch.app.services import settings_service


def test_defaults():
    config = DetectionConfig()

    assert config.strict_min_transactions == 3
    assert config.strict_amount_variance == 0.05
    assert config.smart_interval_consistency == 0.50
    assert config.grace_days_for("yearly") == 30
    assert config.excluded_categories == ["Fees"]
    assert config.is_excluded_category(" fees ")


def test_config_is_frozen():
    config = DetectionConfig()
    with pytest.raises(Exception):
        config.zombie_min_months = 1


def test_env_overrides_use_prefixed_upper_case_names():
    environ = {
        "WASTEWATCH_ZOMBIE_MIN_MONTHS": "6",
        "WASTEWATCH_EXCLUDED_CATEGORIES": "Fees, Transfers",
        "WASTEWATCH_NOT_A_FIELD": "1",
        "ZOMBIE_MIN_MONTHS": "9",
    }

    config = build_config(env_overrides(environ))

    assert config.zombie_min_months == 6
    assert config.excluded_categories == ["Fees", "Transfers"]


def test_later_layers_win():
    config = build_config({"price_increase_percent": 7.5}, {"price_increase_percent": 10})

    assert config.price_increase_percent == 10.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"strict_amount_variance": 5},
        {"classification_workers": 0},
        {"smart_min_transactions": 4},
        {"oracle_timeout_seconds": "soon"},
        {"unknown_field": 1},
    ],
)
def test_invalid_values_raise_config_invalid(overrides):
    with pytest.raises(ConfigInvalid) as exc_info:
        build_config(overrides)

    assert exc_info.value.errors


def test_stored_overrides_take_precedence_over_environment(db_session):
    settings_service.update_overrides(db_session, {"zombie_min_months": 2})

    config = settings_service.load_detection_config(
        db_session, environ={"WASTEWATCH_ZOMBIE_MIN_MONTHS": "6", "WASTEWATCH_PRICE_LOOKBACK_DAYS": "60"}
    )

    assert config.zombie_min_months == 2
    assert config.price_lookback_days == 60


def test_update_overrides_validates_before_writing(db_session):
    with pytest.raises(ConfigInvalid):
        settings_service.update_overrides(db_session, {"acknowledgment_stale_days": -1})
    with pytest.raises(ConfigInvalid):
        settings_service.update_overrides(db_session, {"bogus": 1})

    assert settings_service.stored_overrides(db_session) == {}


def test_none_drops_an_override(db_session):
    settings_service.update_overrides(db_session, {"zombie_min_months": 2, "price_lookback_days": 30})
    settings_service.update_overrides(db_session, {"zombie_min_months": None})

    assert settings_service.stored_overrides(db_session) == {"price_lookback_days": 30}
