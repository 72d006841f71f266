"""
Tests for centralized configuration
===================================
"""

import dataclasses

import pytest

from chorus.config import DISPATCH, GAVEL, LEDGER, STORE, DispatchConfig, get_timeout


class TestDefaults:

    @pytest.mark.unit
    def test_dispatch_defaults(self):
        config = DispatchConfig()

        assert config.CALL_TIMEOUT > 0
        assert config.MAX_RETRIES >= 0
        assert config.MAX_CONCURRENT >= 1

    @pytest.mark.unit
    def test_configs_are_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            DISPATCH.MAX_RETRIES = 10  # type: ignore[misc]

    @pytest.mark.unit
    def test_other_bounds(self):
        assert GAVEL.HISTORY_LIMIT > 0
        assert LEDGER.TAIL_ENTRIES > 0
        assert LEDGER.MAX_PROMPT_CHARS > 0
        assert STORE.LOCK_TIMEOUT > 0


class TestGetTimeout:

    @pytest.mark.unit
    def test_known_operations(self):
        assert get_timeout("call") == DISPATCH.CALL_TIMEOUT
        assert get_timeout("retry_delay") == DISPATCH.RETRY_DELAY
        assert get_timeout("batch_delay") == DISPATCH.BATCH_DELAY
        assert get_timeout("file_lock") == float(STORE.LOCK_TIMEOUT)

    @pytest.mark.unit
    def test_unknown_operation_falls_back_to_call_timeout(self):
        assert get_timeout("something_else") == DISPATCH.CALL_TIMEOUT
