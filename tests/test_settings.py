import pytest
from pydantic import ValidationError

from livability.config.settings import Settings, _apply_env_overrides, apply_profile, get_settings


def test_defaults_load_with_expected_tile_caps():
    settings = get_settings()
    assert settings.tiles.zoom == 13
    assert settings.tiles.max_viewport_tiles == 36
    assert settings.tiles.max_total_tiles == 64
    assert settings.cache.redis_url is None
    assert {"balanced", "family", "young_professional", "senior"} <= set(settings.profiles)


def test_env_overrides_are_whitelisted(monkeypatch):
    monkeypatch.setenv("LIVABILITY_REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("LIVABILITY_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("LIVABILITY_BATCH_URL", "http://api:8000/api/heatmap/batch")

    data = _apply_env_overrides({"cache": {"score_ttl_seconds": 10}})

    assert data["cache"] == {"score_ttl_seconds": 10, "redis_url": "redis://cache:6379/0"}
    assert data["app"]["log_level"] == "DEBUG"
    assert data["prefetch"]["batch_url"] == "http://api:8000/api/heatmap/batch"


def test_get_settings_reads_external_config(monkeypatch, tmp_path):
    cfg = tmp_path / "livability.yaml"
    cfg.write_text(
        "tiles:\n  max_viewport_tiles: 16\n  max_total_tiles: 32\n"
        "factors:\n  - {id: grocery, weight: 50, max_distance: 500}\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("LIVABILITY_CONFIG_PATH", str(cfg))
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.tiles.max_viewport_tiles == 16
        assert [f.id for f in settings.factors] == ["grocery"]
    finally:
        get_settings.cache_clear()


def test_apply_profile_leaves_defaults_untouched():
    settings = get_settings()
    family = apply_profile(settings.factors, settings.profiles["family"])

    by_id = {f.id: f for f in family}
    assert by_id["playgrounds"].weight == 95
    assert by_id["playgrounds"].max_distance == 500
    assert by_id["water"].enabled is True
    assert next(f for f in settings.factors if f.id == "playgrounds").weight == 0


def test_profiles_must_reference_known_factors():
    with pytest.raises(ValidationError, match="unknown factors: ghost"):
        Settings.model_validate(
            {
                "factors": [{"id": "grocery", "weight": 50, "max_distance": 500}],
                "profiles": {"p": {"overrides": {"ghost": {"weight": 10}}}},
            }
        )


def test_tile_caps_are_validated():
    with pytest.raises(ValidationError):
        Settings.model_validate({"tiles": {"max_viewport_tiles": 40, "max_total_tiles": 20}})
