"""
Tests for the command-line entry point.
"""

from unittest.mock import patch

import pytest

from partition_lookup import __main__ as cli
from partition_lookup.config import ServiceConfig
from partition_lookup.errors import ConfigurationError


@pytest.mark.unit
class TestMain:

    def test_bad_configuration_exits_2(self):
        error = ConfigurationError("expected an integer", variable="CQL_PORT", value="x")

        with patch.object(cli, "load_config_from_env", side_effect=error), \
                patch.object(cli.uvicorn, "run") as run:
            assert cli.main() == 2

        run.assert_not_called()

    def test_runs_uvicorn(self):
        config = ServiceConfig(http_host="127.0.0.1", http_port=8081, log_level="WARNING")

        with patch.object(cli, "load_config_from_env", return_value=config), \
                patch.object(cli, "setup_production_logging") as setup_logging, \
                patch.object(cli.uvicorn, "run") as run:
            assert cli.main() == 0

        setup_logging.assert_called_once_with(level="WARNING", format="text")
        kwargs = run.call_args.kwargs
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 8081
        assert kwargs["log_level"] == "warning"
        assert kwargs["log_config"] is None
