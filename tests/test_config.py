"""
Tests for configuration module
"""
import logging
from datetime import timedelta

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import (
    ConfigValidationError,
    _validate_positive_int,
    _validate_url,
    load_settings,
    parse_bind_addr,
    setup_logging,
)

REQUIRED = {'TERMINATING_QUOTA': '1Gi', 'NONTERMINATING_QUOTA': '2Gi'}


class TestDefaults:
    """Tests for the built-in defaults"""

    def test_defaults_with_required_quotas(self):
        """Only the memory quotas have no default"""
        settings = load_settings(environ=REQUIRED)

        assert settings.quota == timedelta(hours=16)
        assert settings.period == timedelta(hours=24)
        assert settings.sleep_sync_period == timedelta(minutes=60)
        assert settings.sleep_duration == timedelta(hours=8)
        assert settings.sleep_dry_run is True
        assert settings.workers == 10
        assert settings.idle_sync_period == timedelta(minutes=10)
        assert settings.idle_query_period == timedelta(minutes=30)
        assert settings.idle_threshold == 5000
        assert settings.idle_dry_run is True
        assert settings.metrics_bind_addr == ':8080'
        assert settings.collect_cache is True

    def test_quotas_parsed_to_bytes(self):
        """Quantities should be converted to whole bytes"""
        settings = load_settings(environ=REQUIRED)

        assert settings.terminating_quota == 1024 ** 3
        assert settings.nonterminating_quota == 2 * 1024 ** 3

    def test_excluded_namespaces_split(self):
        """Comma separated list becomes a tuple without blanks"""
        env = dict(REQUIRED, EXCLUDED_NAMESPACES='default, kube-*,,')
        settings = load_settings(environ=env)

        assert settings.excluded_namespaces == ('default', 'kube-*')


class TestValidation:
    """Tests for configuration validation"""

    def test_missing_terminating_quota_is_fatal(self):
        """A project quota is required"""
        with pytest.raises(ConfigValidationError) as exc:
            load_settings(environ={'NONTERMINATING_QUOTA': '1Gi'})
        assert 'terminating_quota' in str(exc.value)

    def test_malformed_quota_is_fatal(self):
        """A malformed quantity must not start the controller"""
        env = dict(REQUIRED, NONTERMINATING_QUOTA='lots')
        with pytest.raises(ConfigValidationError) as exc:
            load_settings(environ=env)
        assert 'nonterminating_quota' in str(exc.value)

    def test_errors_are_collected(self):
        """Every invalid value should be reported at once"""
        env = dict(REQUIRED, QUOTA='forever', WORKERS='0', IDLE_THRESHOLD='-1')
        with pytest.raises(ConfigValidationError) as exc:
            load_settings(environ=env)
        # Parse errors are reported before range checks run
        assert 'quota' in str(exc.value)

        env = dict(REQUIRED, WORKERS='0', IDLE_THRESHOLD='-1')
        with pytest.raises(ConfigValidationError) as exc:
            load_settings(environ=env)
        message = str(exc.value)
        assert 'workers' in message
        assert 'idle_threshold' in message

    def test_non_positive_duration_fails(self):
        env = dict(REQUIRED, SLEEP_DURATION='0')
        with pytest.raises(ConfigValidationError):
            load_settings(environ=env)

    def test_invalid_prometheus_url_fails(self):
        env = dict(REQUIRED, PROMETHEUS_URL='not-a-url')
        with pytest.raises(ConfigValidationError):
            load_settings(environ=env)

    def test_negative_timeout_fails(self):
        """Negative timeout should fail validation"""
        with pytest.raises(ConfigValidationError):
            _validate_positive_int("TEST_TIMEOUT", -1)

    def test_positive_timeout_passes(self):
        """Positive timeout should pass validation"""
        _validate_positive_int("TEST_TIMEOUT", 30)

    def test_invalid_url_fails(self):
        """Invalid URL should fail validation"""
        with pytest.raises(ConfigValidationError):
            _validate_url("TEST_URL", "ftp://prometheus")

    def test_valid_https_url_passes(self):
        """Valid HTTPS URL should pass validation"""
        _validate_url("TEST_URL", "https://prometheus.example.com")


class TestSources:
    """Tests for YAML and environment precedence"""

    def test_yaml_overrides_defaults(self, tmp_path):
        config_file = tmp_path / "hibernate.yaml"
        config_file.write_text(
            "quota: 8h\n"
            "terminating_quota: 512Mi\n"
            "nonterminating_quota: 1Gi\n"
            "sleep_dry_run: false\n"
        )
        settings = load_settings(str(config_file), environ={})

        assert settings.quota == timedelta(hours=8)
        assert settings.terminating_quota == 512 * 1024 ** 2
        assert settings.sleep_dry_run is False

    def test_env_overrides_yaml(self, tmp_path):
        config_file = tmp_path / "hibernate.yaml"
        config_file.write_text("quota: 8h\nterminating_quota: 1Gi\nnonterminating_quota: 1Gi\n")
        settings = load_settings(str(config_file), environ={'QUOTA': '4h'})

        assert settings.quota == timedelta(hours=4)

    def test_config_file_from_env(self, tmp_path):
        """CONFIG_FILE is used when no path is passed"""
        config_file = tmp_path / "hibernate.yaml"
        config_file.write_text("terminating_quota: 1Gi\nnonterminating_quota: 1Gi\nworkers: 3\n")
        settings = load_settings(environ={'CONFIG_FILE': str(config_file)})

        assert settings.workers == 3

    def test_unknown_yaml_key_fails(self, tmp_path):
        config_file = tmp_path / "hibernate.yaml"
        config_file.write_text("terminating_quota: 1Gi\nnonterminating_quota: 1Gi\nqouta: 2h\n")
        with pytest.raises(ConfigValidationError) as exc:
            load_settings(str(config_file), environ={})
        assert 'qouta' in str(exc.value)

    def test_non_mapping_yaml_fails(self, tmp_path):
        config_file = tmp_path / "hibernate.yaml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigValidationError):
            load_settings(str(config_file), environ=REQUIRED)

    def test_missing_file_fails(self, tmp_path):
        with pytest.raises(ConfigValidationError):
            load_settings(str(tmp_path / "absent.yaml"), environ=REQUIRED)

    def test_bool_strings(self):
        env = dict(REQUIRED, SLEEP_DRY_RUN='false', IDLE_DRY_RUN='0', COLLECT_CACHE='yes')
        settings = load_settings(environ=env)

        assert settings.sleep_dry_run is False
        assert settings.idle_dry_run is False
        assert settings.collect_cache is True


class TestBindAddr:
    """Tests for parse_bind_addr"""

    def test_port_only(self):
        assert parse_bind_addr(':8080') == ('0.0.0.0', 8080)

    def test_host_and_port(self):
        assert parse_bind_addr('127.0.0.1:9100') == ('127.0.0.1', 9100)

    @pytest.mark.parametrize('value', ['8080', 'host:http', ':0', ':70000'])
    def test_invalid(self, value):
        with pytest.raises(ConfigValidationError):
            parse_bind_addr(value)

    def test_invalid_bind_addr_rejected_by_load(self):
        env = dict(REQUIRED, METRICS_BIND_ADDR='nowhere')
        with pytest.raises(ConfigValidationError):
            load_settings(environ=env)


class TestLoggingSetup:
    """Tests for logging configuration"""

    def test_setup_logging_configures_root(self):
        """setup_logging should configure root logger"""
        setup_logging()

        root_logger = logging.getLogger()
        assert root_logger.level in [logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR]

    def test_third_party_loggers_quieted(self):
        setup_logging()

        assert logging.getLogger("kubernetes").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING
