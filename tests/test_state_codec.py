"""Unit tests for OAuth transaction state encryption.

Tests for:
- Encode/decode of a fresh state
- Tamper, truncation and non-canonical encoding rejection
- Expiry and future-dated payloads
- Single-use transaction ids
"""

import pytest

from portalauth.service.errors import StateError
from portalauth.service.roles import Role
from portalauth.service.state_codec import StateCodec


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingCache:
    """Stands in for Redis SET NX: first consumer wins."""

    def __init__(self):
        self.consumed = {}

    async def consume_state_id(self, transaction_id, ttl_seconds):
        if transaction_id in self.consumed:
            return False
        self.consumed[transaction_id] = ttl_seconds
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return StateCodec("unit-test-state-secret", ttl_seconds=600, clock=clock)


def _flip_char(token: str, index: int) -> str:
    replacement = "A" if token[index] != "A" else "B"
    return token[:index] + replacement + token[index + 1:]


def _flip_bit(token: str, index: int, bit: int) -> str:
    return token[:index] + chr(ord(token[index]) ^ (1 << bit)) + token[index + 1:]


class TestRoundTrip:
    """A freshly encoded state decodes to the same transaction."""

    async def test_decode_returns_original_state(self, codec):
        """Test that every field survives encryption."""
        state = codec.new_state(Role.ISSUER, True)
        decoded = await codec.decode(codec.encode(state))

        assert decoded == state
        assert decoded.requested_role == Role.ISSUER
        assert decoded.is_signup is True

    def test_encoded_state_is_url_safe_without_padding(self, codec):
        """Test that the token can be placed in a query string unescaped."""
        token = codec.encode(codec.new_state(Role.INVESTOR, False))

        assert "=" not in token
        assert "+" not in token and "/" not in token

    def test_new_states_have_distinct_secrets(self, codec):
        """Test that nonce, CSRF state and transaction id are random per login."""
        first = codec.new_state(Role.INVESTOR, False)
        second = codec.new_state(Role.INVESTOR, False)

        assert first.nonce != second.nonce
        assert first.csrf_state != second.csrf_state
        assert first.transaction_id != second.transaction_id

    def test_empty_secret_is_rejected(self):
        """Test that the codec cannot be built without key material."""
        with pytest.raises(ValueError):
            StateCodec("")


class TestRejection:
    """Anything but an authentic, fresh, unused state raises StateError."""

    async def test_every_single_bit_flip_is_rejected(self, codec):
        """Test that no single-bit change to any character yields a valid state."""
        token = codec.encode(codec.new_state(Role.INVESTOR, False))
        accepted = []

        for index in range(len(token)):
            for bit in range(7):
                mutated = _flip_bit(token, index, bit)
                try:
                    await codec.decode(mutated)
                except StateError:
                    continue
                accepted.append((index, bit))

        assert accepted == []
        assert (await codec.decode(token)).requested_role == Role.INVESTOR

    async def test_truncated_state_is_rejected(self, codec):
        """Test that a shortened token is rejected."""
        token = codec.encode(codec.new_state(Role.INVESTOR, False))

        with pytest.raises(StateError):
            await codec.decode(token[:-10])

    async def test_non_canonical_encoding_is_rejected(self, codec):
        """Test that trailing padding characters are not accepted as an alias."""
        token = codec.encode(codec.new_state(Role.INVESTOR, False))

        with pytest.raises(StateError):
            await codec.decode(token + "==")

    async def test_garbage_is_rejected(self, codec):
        """Test that arbitrary strings raise StateError, not a decoding error."""
        for garbage in ("", "not-a-state", "!!!!", "a" * 5000):
            with pytest.raises(StateError):
                await codec.decode(garbage)

    async def test_missing_state_is_rejected(self, codec):
        """Test that None is treated like an empty state."""
        with pytest.raises(StateError):
            await codec.decode(None)

    async def test_state_from_another_secret_is_rejected(self, codec, clock):
        """Test that a state sealed under a different key does not open."""
        other = StateCodec("some-other-secret", clock=clock)
        token = other.encode(other.new_state(Role.INVESTOR, False))

        with pytest.raises(StateError):
            await codec.decode(token)

    async def test_expired_state_is_rejected(self, codec, clock):
        """Test that a state older than the TTL is refused."""
        token = codec.encode(codec.new_state(Role.INVESTOR, False))
        clock.now += 601

        with pytest.raises(StateError):
            await codec.decode(token)

    async def test_state_within_ttl_is_accepted(self, codec, clock):
        """Test that a state just inside the TTL still decodes."""
        token = codec.encode(codec.new_state(Role.ADMIN, False))
        clock.now += 590

        decoded = await codec.decode(token)

        assert decoded.requested_role == Role.ADMIN


class TestSingleUse:
    """A transaction id can be consumed exactly once."""

    async def test_replay_is_rejected_in_process(self, codec):
        """Test that decoding the same state twice fails the second time."""
        token = codec.encode(codec.new_state(Role.INVESTOR, False))
        await codec.decode(token)

        with pytest.raises(StateError):
            await codec.decode(token)

    async def test_replay_is_rejected_through_cache(self, clock):
        """Test that the shared cache decides which decode wins."""
        cache = RecordingCache()
        codec = StateCodec("unit-test-state-secret", ttl_seconds=300, cache=cache, clock=clock)
        state = codec.new_state(Role.ISSUER, False)
        token = codec.encode(state)

        await codec.decode(token)
        with pytest.raises(StateError):
            await codec.decode(token)

        assert cache.consumed == {state.transaction_id: 300}

    async def test_rejected_state_does_not_consume_id(self, codec):
        """Test that a tampered copy cannot burn the real transaction id."""
        token = codec.encode(codec.new_state(Role.INVESTOR, False))

        with pytest.raises(StateError):
            await codec.decode(_flip_char(token, len(token) // 2))
        decoded = await codec.decode(token)

        assert decoded.requested_role == Role.INVESTOR
