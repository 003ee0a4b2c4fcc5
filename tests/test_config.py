from adaptive_dread import config


def test_environment_overrides_defaults(monkeypatch):
    monkeypatch.setenv("DREAD_MIN_INTENT_INTERVAL", "3.5")
    monkeypatch.setenv("DREAD_UNDO_DEPTH", "4")

    cfg = config.reload_config()
    try:
        assert cfg.MIN_INTENT_INTERVAL == 3.5
        assert cfg.UNDO_DEPTH == 4
        assert config.get("UNDO_DEPTH") == 4
        assert config.get("NOT_A_SETTING", "fallback") == "fallback"
    finally:
        monkeypatch.delenv("DREAD_MIN_INTENT_INTERVAL")
        monkeypatch.delenv("DREAD_UNDO_DEPTH")
        config.reload_config()


def test_defaults_match_loop_constants():
    cfg = config.Config()

    assert cfg.FEEDBACK_INTERVAL == 5.0
    assert cfg.IMMEDIATE_INTENSITY == 0.8
    assert cfg.UNDO_DEPTH == 10
    assert "MIN_INTENT_INTERVAL" in cfg.to_dict()
