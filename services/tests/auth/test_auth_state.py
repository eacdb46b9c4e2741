"""Tests for Redis-backed ephemeral auth state."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

from docklytask.auth.auth_state import (
    AUTH_STATE_PREFIX,
    AUTH_STATE_TTL,
    AuthState,
    consume_auth_state,
    generate_state,
    store_auth_state,
)


def _pipeline(results) -> tuple[MagicMock, AsyncMock]:
    redis = MagicMock()
    pipe = MagicMock()
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    pipe.execute = AsyncMock(return_value=results)
    redis.pipeline = MagicMock(return_value=pipe)
    return redis, pipe


class TestGenerators:
    def test_generate_state_is_unique(self):
        s1 = generate_state()
        s2 = generate_state()
        assert s1 != s2
        assert len(s1) > 20


class TestStoreAuthState:
    @patch("docklytask.auth.auth_state.get_redis_client")
    async def test_store_auth_state(self, mock_get_redis):
        redis = AsyncMock()
        mock_get_redis.return_value = redis

        state = AuthState(idp_state="idp-state-xyz", nonce="nonce-456", callback_url="/tasks")
        result = await store_auth_state(state)

        assert result == "idp-state-xyz"
        call_args = redis.set.call_args
        assert call_args[0][0] == AUTH_STATE_PREFIX + "idp-state-xyz"
        assert call_args[1]["ex"] == AUTH_STATE_TTL

        stored = json.loads(call_args[0][1])
        assert stored == {"idp_state": "idp-state-xyz", "nonce": "nonce-456", "callback_url": "/tasks"}


class TestConsumeAuthState:
    @patch("docklytask.auth.auth_state.get_redis_client")
    async def test_consume_existing_state(self, mock_get_redis):
        data = json.dumps({"idp_state": "s", "nonce": "n", "callback_url": "/"})
        redis, pipe = _pipeline([data, 1])
        mock_get_redis.return_value = redis

        state = await consume_auth_state("s")

        assert state == AuthState(idp_state="s", nonce="n", callback_url="/")
        pipe.get.assert_called_once_with(AUTH_STATE_PREFIX + "s")
        pipe.delete.assert_called_once_with(AUTH_STATE_PREFIX + "s")

    @patch("docklytask.auth.auth_state.get_redis_client")
    async def test_consume_missing_state(self, mock_get_redis):
        redis, _ = _pipeline([None, 0])
        mock_get_redis.return_value = redis

        assert await consume_auth_state("gone") is None
