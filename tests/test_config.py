import pytest

from qmethod.config_loader import CONFIG_DIR, build_engine_config, load_config, session_options
from qmethod.core import analysis
from qmethod.core.analysis import configure
from qmethod.errors import InputError


@pytest.fixture
def restore_defaults(monkeypatch):
    monkeypatch.setattr(analysis, "EXTRACTION_DEFAULTS", analysis.EXTRACTION_DEFAULTS)
    monkeypatch.setattr(analysis, "ROTATION_DEFAULTS", analysis.ROTATION_DEFAULTS)
    monkeypatch.setattr(analysis, "STATISTICS_DEFAULTS", analysis.STATISTICS_DEFAULTS)


def test_default_yaml_loads():
    config = load_config(str(CONFIG_DIR / "default.yaml"))
    assert config['grid']['min_rank'] == -4
    assert config['rotation']['condition_limit'] == 1.0e10
    assert session_options(config).mode == "orthogonal"


def test_app_config_env_selects_file(monkeypatch):
    monkeypatch.setenv("APP_CONFIG", "default")
    assert load_config()['extraction']['method'] == "centroid"


def test_engine_config_uses_configured_defaults(restore_defaults):
    config = load_config(str(CONFIG_DIR / "default.yaml"))
    configure(
        extraction={**config['extraction'], 'method': 'pca'},
        rotation={'method': 'quartimax'},
        statistics=config['statistics'],
    )
    engine_config = build_engine_config(config)

    assert engine_config.extraction.method == "pca"
    assert engine_config.rotation.method == "quartimax"
    assert engine_config.statistics.significance_levels == (0.05, 0.01)
    assert engine_config.grid.counts == (2, 3, 4, 5, 6, 5, 4, 3, 2)
    assert engine_config.session.idle_timeout == 1800
    assert engine_config.bootstrap is None


def test_bootstrap_section_enables_batch_intervals(restore_defaults):
    engine_config = build_engine_config({'bootstrap': {'n_resamples': 200, 'seed': 3}})
    assert engine_config.bootstrap.n_resamples == 200
    assert engine_config.bootstrap.seed == 3


@pytest.mark.parametrize("section", ["extraction", "rotation", "statistics"])
def test_unknown_option_is_input_error(restore_defaults, section):
    with pytest.raises(InputError):
        configure(**{section: {'no_such_option': 1}})


def test_unknown_session_option_is_input_error():
    with pytest.raises(InputError):
        build_engine_config({'sessions': {'no_such_option': 1}})


def test_bootstrap_section_does_not_size_the_pool():
    with pytest.raises(InputError):
        build_engine_config({'bootstrap': {'n_resamples': 100, 'max_workers': 4}})
