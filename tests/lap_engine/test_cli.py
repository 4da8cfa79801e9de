"""
CLI Tests.

============================================================
PURPOSE
============================================================
Tests for argument parsing, validation, configuration
overrides, logging setup and the main entry point.

============================================================
"""

import logging

import pytest

from lap_engine.cli import build_config, create_parser, main, validate_args
from lap_engine.config import LapEngineConfig
from lap_engine.logging_utils import MASK, CredentialMaskingFilter, setup_logging


ENV_VARS = (
    "LAP_LEDGER_BACKEND",
    "LAP_LEDGER_URL",
    "LAP_MARKET_DATA_BACKEND",
    "LAP_MARKET_DATA_URL",
    "LAP_SESSION_BACKEND",
    "LAP_SESSION_DIR",
    "DATABASE_URL",
    "LAP_LOG_LEVEL",
    "LAP_OPS_PER_SECOND",
    "LAP_ADMIN_CREDENTIAL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def parse(*argv):
    return create_parser().parse_args(list(argv))


# ============================================================
# PARSER
# ============================================================

class TestParser:
    """Tests for create_parser()."""

    def test_new_command(self):
        args = parse("new", "--resource", "Mint1", "--pool-size", "20", "--funding", "0.5")

        assert args.command == "new"
        assert args.pool_size == 20
        assert args.funding == "0.5"
        assert args.strategy is None
        assert not args.no_run

    def test_restart_command(self):
        args = parse("restart", "--session", "s1", "--stage", "4", "--strategy", "increase_makers_volume")

        assert args.stage == "4"
        assert args.strategy == "increase_makers_volume"

    def test_common_options_on_subcommand(self):
        args = parse("run", "-s", "s1", "--session-backend", "sql", "--database-url", "sqlite://", "--log-format", "json")

        assert args.session == "s1"
        assert args.session_backend == "sql"
        assert args.log_format == "json"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse()

    def test_unknown_backend_rejected(self):
        with pytest.raises(SystemExit):
            parse("list", "--ledger-backend", "carrier-pigeon")


# ============================================================
# VALIDATION
# ============================================================

class TestValidateArgs:
    """Tests for validate_args()."""

    def test_valid_new(self):
        assert validate_args(parse("new", "--resource", "M", "--pool-size", "100", "--funding", "1")) == []

    @pytest.mark.parametrize("size", ["0", "101", "-5"])
    def test_pool_size_bounds(self, size):
        errors = validate_args(parse("new", "--resource", "M", "--pool-size", size, "--funding", "1"))

        assert errors == ["Count must be between 1 and 100"]

    def test_funding_must_be_positive(self):
        errors = validate_args(parse("new", "--resource", "M", "--pool-size", "5", "--funding", "0"))

        assert errors == ["--funding must be positive"]

    def test_funding_must_be_number(self):
        errors = validate_args(parse("new", "--resource", "M", "--pool-size", "5", "--funding", "lots"))

        assert "not a number" in errors[0]

    @pytest.mark.parametrize("stage", ["0", "7", "abc"])
    def test_invalid_restart_point(self, stage):
        assert validate_args(parse("restart", "-s", "s1", "--stage", stage))

    def test_ops_per_second_positive(self):
        errors = validate_args(parse("list", "--ops-per-second", "0"))

        assert errors == ["--ops-per-second must be positive"]

    def test_main_reports_validation_errors(self, capsys):
        code = main(["new", "--resource", "M", "--pool-size", "0", "--funding", "1"])

        assert code == 1
        assert "Count must be between 1 and 100" in capsys.readouterr().err


# ============================================================
# CONFIGURATION
# ============================================================

class TestBuildConfig:
    """Tests for build_config()."""

    def test_defaults(self):
        config = build_config(parse("list"))

        assert config.ledger.backend == "mock"
        assert config.storage.backend == "json"
        assert config.log_format == "text"

    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("LAP_SESSION_BACKEND", "sql")
        monkeypatch.setenv("LAP_LEDGER_URL", "http://from-env")

        config = build_config(parse(
            "list",
            "--session-backend", "json",
            "--session-dir", "/tmp/sessions",
            "--ops-per-second", "3",
        ))

        assert config.storage.backend == "json"
        assert config.storage.session_dir == "/tmp/sessions"
        assert config.ledger.base_url == "http://from-env"
        assert config.rate_limit.operations_per_second == 3.0

    def test_production_defaults(self):
        config = build_config(parse("list", "--production"))

        assert config.ledger.backend == "http"
        assert config.market_data.backend == "dexscreener"
        assert config.storage.backend == "sql"
        assert config.log_format == "json"

    def test_flags_override_production(self):
        config = build_config(parse("list", "--production", "--session-backend", "json", "--log-format", "text"))

        assert config.ledger.backend == "http"
        assert config.storage.backend == "json"
        assert config.log_format == "text"

    def test_environment_applies_without_flags(self, monkeypatch):
        monkeypatch.setenv("LAP_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LAP_OPS_PER_SECOND", "7.5")

        config = LapEngineConfig.from_env()

        assert config.log_level == "DEBUG"
        assert config.rate_limit.operations_per_second == 7.5


# ============================================================
# LOGGING
# ============================================================

class TestLogging:
    """Tests for credential masking and setup_logging()."""

    def record(self, msg, *args) -> logging.LogRecord:
        return logging.LogRecord("lap_engine", logging.INFO, __file__, 1, msg, args, None)

    def test_secret_is_masked(self):
        masking = CredentialMaskingFilter(["s3cr3t-key"])
        record = self.record("imported admin with %s", "s3cr3t-key")

        assert masking.filter(record)
        assert record.getMessage() == f"imported admin with {MASK}"

    def test_plain_record_untouched(self):
        masking = CredentialMaskingFilter(["s3cr3t-key"])
        record = self.record("lap %d completed", 3)

        masking.filter(record)

        assert record.getMessage() == "lap 3 completed"
        assert record.args == (3,)

    def test_empty_secret_ignored(self):
        masking = CredentialMaskingFilter()
        masking.register_secret(None)
        masking.register_secret("")
        record = self.record("nothing to hide")

        masking.filter(record)

        assert record.getMessage() == "nothing to hide"

    def test_setup_logging(self, restore_root_logger):
        logger = setup_logging("WARNING", "json", correlation_id="session_1")

        assert logger.name == "lap_engine"
        assert logging.getLogger().level == logging.WARNING
        assert len(logging.getLogger().handlers) == 1


# ============================================================
# ENTRY POINT
# ============================================================

class TestMain:
    """Tests for main() against a JSON session directory."""

    def test_list_empty_directory(self, tmp_path, capsys, restore_root_logger):
        code = main(["list", "--session-backend", "json", "--session-dir", str(tmp_path)])

        assert code == 0
        assert capsys.readouterr().out.strip() == ""

    def test_status_of_unknown_session(self, tmp_path, capsys, restore_root_logger):
        code = main(["status", "-s", "missing", "--session-backend", "json", "--session-dir", str(tmp_path)])

        assert code == 1
        assert "Error" in capsys.readouterr().err

    def test_new_with_unknown_resource(self, tmp_path, capsys, restore_root_logger):
        code = main([
            "new", "--resource", "Mint1", "--pool-size", "2", "--funding", "0.1",
            "--session-backend", "json", "--session-dir", str(tmp_path), "--no-run",
        ])

        assert code == 1
        assert list(tmp_path.iterdir()) == []
