"""
Tests for the signed OAuth state parameter.
"""
import pytest
from jose import jwt

from src.errors import StateExpired, StateInvalid
from src.UAA.state_codec import StateCodec


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestStateCodec:

    def test_roundtrip_returns_subject_and_nonce(self):
        clock = FakeClock()
        codec = StateCodec("s3cret", clock=clock)

        state = codec.issue("user-1", ttl=3600, platform="youtube")
        claims = codec.verify(state, platform="youtube")

        assert claims.subject == "user-1"
        assert claims.platform == "youtube"
        assert len(claims.nonce) == 24
        assert claims.expiry == claims.issued_at + 3600

    def test_each_state_gets_a_fresh_nonce(self):
        codec = StateCodec("s3cret", clock=FakeClock())
        a = codec.verify(codec.issue("user-1", ttl=60))
        b = codec.verify(codec.issue("user-1", ttl=60))
        assert a.nonce != b.nonce

    def test_callback_after_61_minutes_is_expired_not_invalid(self):
        """A one hour state presented 61 minutes later must be StateExpired."""
        clock = FakeClock()
        codec = StateCodec("s3cret", clock=clock)
        state = codec.issue("user-1", ttl=3600, platform="youtube")

        clock.now += 61 * 60

        with pytest.raises(StateExpired):
            codec.verify(state, platform="youtube")

    def test_state_still_valid_just_before_expiry(self):
        clock = FakeClock()
        codec = StateCodec("s3cret", clock=clock)
        state = codec.issue("user-1", ttl=3600)
        clock.now += 3599
        assert codec.verify(state).subject == "user-1"

    def test_tampered_signature_is_invalid(self):
        codec = StateCodec("s3cret", clock=FakeClock())
        state = codec.issue("user-1", ttl=3600)
        head, payload, sig = state.split(".")
        tampered = ".".join([head, payload, sig[::-1]])

        with pytest.raises(StateInvalid):
            codec.verify(tampered)

    def test_state_signed_with_other_secret_is_invalid(self):
        clock = FakeClock()
        state = StateCodec("other", clock=clock).issue("user-1", ttl=3600)
        with pytest.raises(StateInvalid):
            StateCodec("s3cret", clock=clock).verify(state)

    def test_garbage_is_invalid(self):
        with pytest.raises(StateInvalid):
            StateCodec("s3cret").verify("not-a-token")

    def test_expired_forgery_is_reported_as_invalid(self):
        """Signature is checked before expiry, so a forged old state is never 'expired'."""
        clock = FakeClock()
        state = StateCodec("other", clock=clock).issue("user-1", ttl=60)
        clock.now += 3600
        with pytest.raises(StateInvalid):
            StateCodec("s3cret", clock=clock).verify(state)

    def test_state_for_another_platform_is_invalid(self):
        codec = StateCodec("s3cret", clock=FakeClock())
        state = codec.issue("user-1", ttl=3600, platform="youtube")
        with pytest.raises(StateInvalid):
            codec.verify(state, platform="twitch")

    def test_missing_claims_are_invalid(self):
        token = jwt.encode({"sub": "user-1", "exp": 1_800_000_000}, "s3cret", algorithm="HS256")
        with pytest.raises(StateInvalid):
            StateCodec("s3cret", clock=FakeClock()).verify(token)

    def test_empty_secret_is_rejected(self):
        with pytest.raises(ValueError):
            StateCodec("")
