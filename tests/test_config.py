from hamflow import config


def test_int_env_reads_and_falls_back(monkeypatch):
    monkeypatch.setenv('HAMFLOW_TEST_DAYS', '14')
    assert config._int_env('HAMFLOW_TEST_DAYS', 30) == 14
    monkeypatch.setenv('HAMFLOW_TEST_DAYS', 'fortnight')
    assert config._int_env('HAMFLOW_TEST_DAYS', 30) == 30
    monkeypatch.delenv('HAMFLOW_TEST_DAYS')
    assert config._int_env('HAMFLOW_TEST_DAYS', 30) == 30


def test_config_holds_only_engine_settings():
    flags = [name for name in vars(config) if name.isupper() and isinstance(getattr(config, name), bool)]
    assert flags == []
    assert config.MAX_EXPANSION_DAYS >= config.DEFAULT_WINDOW_DAYS
