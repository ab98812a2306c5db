"""Tests for the device authorization grant (RFC 8628)."""

import pytest

from warden.service.errors import (
    DeviceAuthorizationPending,
    DeviceCodeDenied,
    DeviceCodeExpired,
    DeviceError,
    DeviceInvalidCode,
    DeviceSlowDown,
    NotSignedIn,
)
from warden.service.providers.device import (
    USER_CODE_ALPHABET,
    format_user_code,
    normalize_user_code,
)
from warden.service.sessions import AuthContext
from warden.service.signin import DeviceCode, SignedIn


async def _start(engine):
    return await engine.sign_in("device")


async def _poll(engine, device_code):
    return await engine.sign_in("device", {"flow": "poll", "deviceCode": device_code})


@pytest.fixture
def approver(engine, memory_store):
    user = memory_store.create_user(email="owner@example.com")
    return engine.sessions.sign_in(user.id)


def _ctx(info):
    return AuthContext(info.user_id, info.session_id)


class TestDeviceStart:
    """Tests for device code issuance."""

    async def test_start_returns_codes(self, engine):
        """Test start hands out a device code and a readable user code."""
        result = await _start(engine)

        assert isinstance(result, DeviceCode)
        assert len(result.device_code) == 40
        assert result.user_code[4] == "-"
        assert all(ch in USER_CODE_ALPHABET for ch in result.user_code.replace("-", ""))
        assert result.verification_uri == "https://app.example.com/device"
        assert result.verification_uri_complete.endswith(f"user_code={result.user_code}")
        assert result.expires_in == 900
        assert result.interval == 5

    async def test_device_code_stored_hashed(self, engine, memory_store):
        """Test the device code itself is not stored."""
        result = await _start(engine)

        stored = list(memory_store.devices.values())[0]
        assert stored.device_code_hash != result.device_code

    def test_user_code_normalisation(self):
        """Test user codes are accepted in any case and with any separators."""
        assert format_user_code("BCDFGHJK") == "BCDF-GHJK"
        assert normalize_user_code("bcdf ghjk") == "BCDF-GHJK"


class TestDevicePolling:
    """Tests for the polling state machine."""

    async def test_pending_then_slow_down_then_expired(self, engine, clock):
        """Test pending, too-fast and expired polls."""
        started = await _start(engine)

        with pytest.raises(DeviceAuthorizationPending):
            await _poll(engine, started.device_code)
        with pytest.raises(DeviceSlowDown):
            await _poll(engine, started.device_code)

        clock.advance(seconds=6)
        with pytest.raises(DeviceAuthorizationPending):
            await _poll(engine, started.device_code)

        clock.advance(seconds=900)
        with pytest.raises(DeviceCodeExpired):
            await _poll(engine, started.device_code)
        # expired records are removed
        with pytest.raises(DeviceInvalidCode):
            await _poll(engine, started.device_code)

    async def test_slow_down_resets_the_interval(self, engine, clock):
        """Test a too-fast poll pushes the next allowed poll back."""
        started = await _start(engine)
        with pytest.raises(DeviceAuthorizationPending):
            await _poll(engine, started.device_code)
        clock.advance(seconds=4)
        with pytest.raises(DeviceSlowDown):
            await _poll(engine, started.device_code)
        clock.advance(seconds=4)

        with pytest.raises(DeviceSlowDown):
            await _poll(engine, started.device_code)

    async def test_approved_device_signs_in(self, engine, approver, clock):
        """Test polling after approval yields tokens for the approver."""
        started = await _start(engine)
        with pytest.raises(DeviceAuthorizationPending):
            await _poll(engine, started.device_code)

        result = await engine.sign_in(
            "device", {"flow": "verify", "userCode": started.user_code.lower()}, auth=_ctx(approver)
        )
        assert result == SignedIn(None)

        clock.advance(seconds=5)
        signed_in = await _poll(engine, started.device_code)

        assert isinstance(signed_in, SignedIn)
        assert signed_in.signed_in.user_id == approver.user_id
        assert signed_in.signed_in.session_id != approver.session_id
        assert engine.authenticate(signed_in.signed_in.tokens.token) is not None

    async def test_device_code_single_use(self, engine, approver, clock):
        """Test a completed device code cannot be polled again."""
        started = await _start(engine)
        engine.approve_device(started.user_code, _ctx(approver))
        await _poll(engine, started.device_code)
        clock.advance(seconds=5)

        with pytest.raises(DeviceInvalidCode):
            await _poll(engine, started.device_code)

    async def test_denied_device(self, engine, approver):
        """Test a denied code fails the poll for good."""
        started = await _start(engine)
        engine.deny_device(started.user_code, _ctx(approver))

        with pytest.raises(DeviceCodeDenied):
            await _poll(engine, started.device_code)
        with pytest.raises(DeviceInvalidCode):
            await _poll(engine, started.device_code)

    async def test_unknown_device_code(self, engine):
        """Test unknown device codes get their own error, distinct from expiry."""
        with pytest.raises(DeviceInvalidCode) as exc:
            await _poll(engine, "not-a-device-code")
        assert exc.value.code == "DEVICE_INVALID_CODE"
        assert not isinstance(exc.value, DeviceCodeExpired)

    async def test_missing_device_code(self, engine):
        """Test polling requires a device code."""
        with pytest.raises(DeviceError):
            await engine.sign_in("device", {"flow": "poll"})


class TestDeviceApproval:
    """Tests for the browser side of the grant."""

    def test_approve_requires_sign_in(self, engine):
        """Test anonymous callers cannot approve devices."""
        with pytest.raises(NotSignedIn):
            engine.approve_device("BCDF-GHJK", None)

    def test_unknown_user_code(self, engine, approver):
        """Test unknown user codes are rejected."""
        with pytest.raises(DeviceError) as exc:
            engine.approve_device("BCDF-GHJK", _ctx(approver))
        assert exc.value.code == "DEVICE_INVALID_USER_CODE"

    async def test_code_cannot_be_approved_twice(self, engine, approver):
        """Test a handled user code cannot be approved again."""
        started = await _start(engine)
        engine.approve_device(started.user_code, _ctx(approver))

        with pytest.raises(DeviceError) as exc:
            engine.approve_device(started.user_code, _ctx(approver))
        assert exc.value.code == "DEVICE_ALREADY_AUTHORIZED"

    async def test_expired_user_code(self, engine, approver, clock):
        """Test expired user codes cannot be approved."""
        started = await _start(engine)
        clock.advance(seconds=901)

        with pytest.raises(DeviceCodeExpired):
            engine.approve_device(started.user_code, _ctx(approver))
        # the expired record is gone, not just refused
        with pytest.raises(DeviceError) as exc:
            engine.approve_device(started.user_code, _ctx(approver))
        assert exc.value.code == "DEVICE_INVALID_USER_CODE"

    async def test_unknown_flow(self, engine):
        """Test unknown flows are rejected."""
        with pytest.raises(DeviceError) as exc:
            await engine.sign_in("device", {"flow": "nope"})
        assert exc.value.code == "DEVICE_UNKNOWN_FLOW"
