"""Configuration defaults and environment overrides."""

import pytest

from deferral.broker.config import BrokerConfig, ExitPolicy
from deferral.outbound.config import ExecutorConfig
from deferral.service.config import ServiceConfig


@pytest.mark.unit
class TestBrokerConfig:
    def test_defaults(self):
        config = BrokerConfig()
        assert config.max_calls_per_record == 3
        assert config.default_timeout == 120.0
        assert config.exit_policy is ExitPolicy.ALL_SETTLED
        assert config.max_chain_depth == 3

    def test_exit_policy_accepts_string(self):
        assert BrokerConfig(exit_policy="any_timeout").exit_policy is ExitPolicy.ANY_TIMEOUT

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_calls_per_record": 0},
            {"max_chain_depth": 0},
            {"default_timeout": 0},
            {"default_timeout": 200.0, "max_timeout": 100.0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            BrokerConfig(**kwargs)

    def test_from_env(self):
        config = BrokerConfig.from_env(
            {
                "DEFERRAL_MAX_CHAIN_DEPTH": "5",
                "DEFERRAL_EXIT_POLICY": "ANY_TIMEOUT",
                "DEFERRAL_DEFAULT_TIMEOUT": "30",
                "UNRELATED": "x",
            }
        )
        assert config.max_chain_depth == 5
        assert config.exit_policy is ExitPolicy.ANY_TIMEOUT
        assert config.default_timeout == 30.0
        assert config.max_calls_per_record == 3

    def test_overrides_win_over_env(self):
        config = BrokerConfig.from_env({"DEFERRAL_MAX_CHAIN_DEPTH": "5"}, max_chain_depth=2)
        assert config.max_chain_depth == 2

    def test_bad_env_value(self):
        with pytest.raises(ValueError, match="DEFERRAL_MAX_PENDING_RECORDS"):
            BrokerConfig.from_env({"DEFERRAL_MAX_PENDING_RECORDS": "lots"})


@pytest.mark.unit
class TestExecutorConfig:
    def test_from_env_bool(self):
        config = ExecutorConfig.from_env(
            {"DEFERRAL_FOLLOW_REDIRECTS": "yes", "DEFERRAL_MAX_IN_FLIGHT": "4"}
        )
        assert config.follow_redirects is True
        assert config.max_in_flight == 4

    def test_headers_are_not_read_from_env(self):
        config = ExecutorConfig.from_env({"DEFERRAL_HEADERS": "x"})
        assert config.headers == {}

    def test_rejects_zero_in_flight(self):
        with pytest.raises(ValueError):
            ExecutorConfig(max_in_flight=0)


@pytest.mark.unit
class TestServiceConfig:
    def test_from_env(self):
        config = ServiceConfig.from_env(
            {"DEFERRAL_HOST": "0.0.0.0", "DEFERRAL_PORT": "7411", "DEFERRAL_USE_MSGPACK": "no"}
        )
        assert config.host == "0.0.0.0"
        assert config.port == 7411
        assert config.use_msgpack is False
