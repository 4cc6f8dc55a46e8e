"""
Hypothesis Property-Based Tests for Blockmind API models.

Uses Hypothesis to generate random valid/invalid inputs and verify:
- Field bounds enforced by the request models
- camelCase aliases on the wire, snake_case in Python
- Domain model invariants
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from app.models.api import (
    CreateIntentRequest,
    LogsRequest,
    MessagePayload,
    ProjectOut,
    SearchRequest,
    TokenSymbol,
)
from app.models.domain import TokenConfig

# ============================================================================
# Request bounds
# ============================================================================


class TestRequestBounds:
    @given(st.integers(min_value=0, max_value=10**9))
    def test_credits_non_negative_accepted(self, credits):
        request = CreateIntentRequest.model_validate({"creditsToPurchase": credits})
        assert request.credits_to_purchase == credits

    @given(st.integers(max_value=-1))
    def test_negative_credits_rejected(self, credits):
        with pytest.raises(ValidationError):
            CreateIntentRequest.model_validate({"creditsToPurchase": credits})

    @given(st.integers())
    def test_search_limit_bounds(self, max_results):
        payload = {"sandboxId": "sb", "query": "q", "maxResults": max_results}
        if 1 <= max_results <= 1000:
            assert SearchRequest.model_validate(payload).max_results == max_results
        else:
            with pytest.raises(ValidationError):
                SearchRequest.model_validate(payload)

    @given(st.integers())
    def test_log_lines_bounds(self, lines):
        if 1 <= lines <= 2000:
            assert LogsRequest.model_validate({"lines": lines}).lines == lines
        else:
            with pytest.raises(ValidationError):
                LogsRequest.model_validate({"lines": lines})


# ============================================================================
# Wire format
# ============================================================================


class TestAliases:
    @given(
        name=st.text(max_size=40),
        dev_port=st.none() | st.integers(min_value=3000, max_value=3999),
        created=st.integers(min_value=0, max_value=2**41),
    )
    def test_project_out_dumps_camel_case(self, name, dev_port, created):
        out = ProjectOut(
            id="sb-1",
            name=name,
            prompt="",
            dev_port=dev_port,
            created_at=created,
            updated_at=created,
        )
        dumped = out.model_dump(by_alias=True)
        assert dumped["devPort"] == dev_port
        assert dumped["createdAt"] == created
        assert "dev_port" not in dumped

    @given(st.dictionaries(st.text(min_size=1, max_size=10), st.integers(), max_size=5))
    def test_message_input_is_opaque(self, tool_input):
        payload = MessagePayload.model_validate({"type": "tool_use", "input": tool_input})
        assert payload.input == tool_input

    @given(st.text(max_size=20))
    def test_snake_case_also_accepted(self, sandbox_id):
        request = SearchRequest.model_validate({"sandbox_id": sandbox_id, "query": "x"})
        assert request.sandbox_id == sandbox_id


# ============================================================================
# Domain invariants
# ============================================================================


class TestTokenConfig:
    @given(st.integers(max_value=-1))
    def test_negative_decimals_rejected(self, decimals):
        with pytest.raises(ValueError):
            TokenConfig(symbol=TokenSymbol.USDC, decimals=decimals, mainnet_mint=None, devnet_mint=None)

    @given(st.integers(min_value=0, max_value=18))
    def test_valid_decimals(self, decimals):
        config = TokenConfig(
            symbol=TokenSymbol.SOL, decimals=decimals, mainnet_mint=None, devnet_mint=None
        )
        assert config.decimals == decimals
