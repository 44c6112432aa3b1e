"""
Tests for configuration loading and structured logging
"""

import json
import logging
from decimal import Decimal

from lending_core import config as config_module
from lending_core.config import LendingConfig, get_config, reload_config
from lending_core.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestLendingConfig:
    """Environment driven settings"""

    def test_defaults(self):
        config = LendingConfig()
        assert config.database_url == "memory://"
        assert config.interest_model == "flat"
        assert config.min_loan_amount_decimal == Decimal('1000.00')
        assert config.max_term_months == 60
        assert config.grace_period_days == 5
        assert config.late_fee_daily_rate_decimal == Decimal('0.05')
        assert config.default_overdue_threshold == 3
        assert config.min_contribution_decimal == Decimal('100.00')
        assert config.loan_number_prefix == "LOAN"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LENDME_INTEREST_MODEL", "amortizing")
        monkeypatch.setenv("LENDME_GRACE_PERIOD_DAYS", "7")
        monkeypatch.setenv("LENDME_OPENING_FUND_BALANCE", "250000.00")
        config = LendingConfig()
        assert config.interest_model == "amortizing"
        assert config.grace_period_days == 7
        assert config.opening_fund_balance_decimal == Decimal('250000.00')

    def test_reload_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("LENDME_LOAN_NUMBER_PREFIX", "CLN")
        try:
            reloaded = reload_config()
            assert reloaded.loan_number_prefix == "CLN"
            assert get_config() is reloaded
        finally:
            config_module.config = original


class TestStructuredLogging:
    """JSON log output"""

    def setup_method(self):
        self.root = logging.getLogger("lendme")

    def teardown_method(self):
        for handler in self.root.handlers[:]:
            self.root.removeHandler(handler)
            handler.close()
        self.root.propagate = True
        self.root.setLevel(logging.NOTSET)

    def test_json_formatter(self):
        record = logging.LogRecord("lendme.loans", logging.INFO, __file__, 1,
                                   "Loan approved", None, None)
        record.user_id = "manager-1"
        record.action = "loan.approve"
        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "lendme.loans"
        assert entry["message"] == "Loan approved"
        assert entry["user_id"] == "manager-1"
        assert "correlation_id" not in entry

    def test_log_action_to_file(self, tmp_path):
        log_file = tmp_path / "lendme.log"
        setup_logging("DEBUG", log_file=str(log_file))

        log_action(get_logger("lendme.fund"), "info", "Fund ledger repayment of 100.00",
                   user_id="manager-1", action="fund.repayment", resource="LOAN2401200001",
                   extra={"available_funds": "1000.00"})
        for handler in self.root.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text(encoding="utf-8").strip().splitlines()[-1])
        assert entry["logger"] == "lendme.fund"
        assert entry["action"] == "fund.repayment"
        assert entry["resource"] == "LOAN2401200001"
        assert entry["extra"] == {"available_funds": "1000.00"}

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "lendme.log"
        setup_logging("INFO", log_format="text", log_file=str(log_file))

        get_logger("lendme.engine").info("Lending engine ready")
        get_logger("lendme.engine").debug("not written")
        for handler in self.root.handlers:
            handler.flush()

        lines = log_file.read_text(encoding="utf-8").strip().splitlines()
        assert len(lines) == 1
        assert "INFO [lendme.engine] Lending engine ready" in lines[0]

    def test_setup_replaces_handlers(self):
        setup_logging("INFO")
        setup_logging("INFO")
        assert len(self.root.handlers) == 1
        assert self.root.propagate is False
