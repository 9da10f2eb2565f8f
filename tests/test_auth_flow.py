"""Service-level tests for the login, callback and logout flows.

Runs the real runtime (memory store, state codec, token engine) against the
fake identity provider from conftest.
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from portalauth.service.errors import (
    AuthzError,
    ProviderRejectedError,
    ReuseDetectedError,
    StateError,
    TokenRevokedError,
    ValidationError,
)
from portalauth.service.fingerprint import device_from_headers
from portalauth.service.roles import Role

BROWSER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def device():
    return device_from_headers({"user-agent": BROWSER_UA}, "203.0.113.50")


async def _sign_in(runtime, fake_idp, *, sub, email, role=None, signup=None, origin=None, device=None, **claims):
    await runtime.gateway.initialize()
    redirect = runtime.auth.start_login(role, signup, origin)
    params = fake_idp.authorize(redirect.authorization_url, sub=sub, email=email, **claims)
    return await runtime.auth.handle_callback(params, device)


def _query(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


class TestLoginInitiation:
    async def test_login_redirects_to_provider(self, runtime):
        """Test that the redirect targets the provider with a sealed state."""
        await runtime.gateway.initialize()

        redirect = runtime.auth.start_login("issuer", None)
        query = _query(redirect.authorization_url)

        assert redirect.requested_role == Role.ISSUER
        assert urlparse(redirect.authorization_url).path == "/oauth2/authorize"
        state = await runtime.codec.decode(query["state"])
        assert state.nonce == query["nonce"]
        assert state.requested_role == Role.ISSUER

    async def test_signup_uses_registration_page(self, runtime):
        await runtime.gateway.initialize()

        redirect = runtime.auth.start_login("INVESTOR", "true")

        assert redirect.is_signup is True
        assert urlparse(redirect.authorization_url).path == "/signup"

    async def test_admin_signup_rejected_before_redirect(self, runtime, fake_idp):
        """Test that ADMIN plus signup never reaches the provider."""
        await runtime.gateway.initialize()

        with pytest.raises(AuthzError):
            runtime.auth.start_login("ADMIN", "true")

        assert fake_idp.codes == {}

    def test_unknown_role_is_rejected(self, runtime):
        with pytest.raises(ValidationError):
            runtime.auth.start_login("superuser", None)

    async def test_role_detected_from_portal_origin(self, runtime):
        """Test that the originating portal selects the role when none is given."""
        await runtime.gateway.initialize()

        issuer = runtime.auth.start_login(None, None, "http://localhost:3002/dashboard")
        admin = runtime.auth.start_login(None, None, "https://admin.portal.example.com")
        default = runtime.auth.start_login(None, None, None)

        assert issuer.requested_role == Role.ISSUER
        assert admin.requested_role == Role.ADMIN
        assert default.requested_role == Role.INVESTOR


class TestCallback:
    async def test_first_login_creates_user_without_roles(self, runtime, fake_idp, device):
        """Test that a new identity becomes a user with no roles and must onboard."""
        outcome = await _sign_in(
            runtime, fake_idp, sub="sub-new", email="New@Example.com", role="INVESTOR",
            signup="true", given_name="Nia", family_name="Okafor", device=device,
        )

        user = runtime.store.get_user_by_subject("sub-new")
        assert user.email == "new@example.com"
        assert user.roles == []
        assert (user.first_name, user.last_name) == ("Nia", "Okafor")
        assert outcome.onboarding_required is True
        query = _query(outcome.redirect_url)
        assert outcome.redirect_url.startswith("http://localhost:3001/callback?")
        assert query["role"] == "INVESTOR"
        assert query["onboarding"] == "required"
        [entry] = runtime.store.list_access_logs(user.id)
        assert entry.event_type == "SIGNUP"
        assert entry.success is True
        assert entry.device_info == "Chrome on macOS"

    async def test_tokens_bound_to_device(self, runtime, fake_idp, device):
        outcome = await _sign_in(
            runtime, fake_idp, sub="sub-dev", email="dev@example.com", device=device
        )

        [record] = runtime.store.list_refresh_tokens(outcome.user.id)
        assert record.device_fingerprint == device.fingerprint
        assert record.active_role == Role.INVESTOR
        claims = runtime.tokens.verify_access_token(outcome.pair.access_token)
        assert claims.active_role == Role.INVESTOR
        # Development portals on other ports receive the tokens in the redirect
        assert _query(outcome.redirect_url)["access_token"] == outcome.pair.access_token

    async def test_returning_user_logs_in(self, runtime, fake_idp):
        """Test that a second login resolves the same user and audits LOGIN."""
        first = await _sign_in(runtime, fake_idp, sub="sub-ret", email="ret@example.com")
        second = await _sign_in(runtime, fake_idp, sub="sub-ret", email="ret@example.com")

        assert first.user.id == second.user.id
        events = [e.event_type for e in runtime.store.list_access_logs(first.user.id)]
        assert sorted(events) == ["LOGIN", "SIGNUP"]

    async def test_onboarded_issuer_skips_onboarding(self, runtime, fake_idp):
        user = runtime.store.create_user(
            "issuer@example.com", provider_subject="sub-issuer", roles=[Role.ISSUER]
        )
        runtime.store.set_onboarding_completed(user.id, Role.ISSUER)

        outcome = await _sign_in(
            runtime, fake_idp, sub="sub-issuer", email="issuer@example.com", role="ISSUER"
        )

        assert outcome.onboarding_required is False
        assert "onboarding" not in _query(outcome.redirect_url)
        assert outcome.redirect_url.startswith("http://localhost:3002/callback?")

    async def test_existing_email_binds_provider_subject(self, runtime, fake_idp):
        """Test that a pre-provisioned email is linked instead of duplicated."""
        existing = runtime.store.create_user("bob@example.com", roles=[Role.INVESTOR])

        outcome = await _sign_in(runtime, fake_idp, sub="sub-bob", email="BOB@example.com")

        assert outcome.user.id == existing.id
        assert runtime.store.get_user_by_subject("sub-bob").id == existing.id
        assert runtime.store.list_access_logs(existing.id)[0].event_type == "LOGIN"

    async def test_admin_login_with_admin_role(self, runtime, fake_idp):
        runtime.store.create_user("root@example.com", provider_subject="sub-root", roles=[Role.ADMIN])

        outcome = await _sign_in(runtime, fake_idp, sub="sub-root", email="root@example.com", role="ADMIN")

        assert outcome.active_role == Role.ADMIN
        assert outcome.onboarding_required is False
        assert outcome.redirect_url.startswith("http://localhost:3003/callback?")

    async def test_admin_login_without_admin_role_is_denied(self, runtime, fake_idp, device):
        """Test the denial path: one failed audit entry, provider sign-out, no tokens."""
        user = runtime.store.create_user(
            "eve@example.com", provider_subject="sub-eve", roles=[Role.INVESTOR]
        )

        with pytest.raises(AuthzError) as excinfo:
            await _sign_in(
                runtime, fake_idp, sub="sub-eve", email="eve@example.com", role="ADMIN", device=device
            )

        assert excinfo.value.detail["portal"] == "admin"
        assert excinfo.value.detail["redirect_url"].startswith("http://localhost:3003/auth-error?")
        [entry] = runtime.store.list_access_logs(user.id)
        assert entry.event_type == "LOGIN"
        assert entry.success is False
        assert entry.portal == "admin"
        assert entry.metadata["reason"] == "admin_role_required"
        await runtime.auth.drain_side_calls()
        assert fake_idp.admin_paths() == ["/admin/users/sub-eve/global-sign-out"]
        assert runtime.store.list_refresh_tokens(user.id) == []

    async def test_admin_denial_survives_provider_admin_outage(self, runtime, fake_idp):
        """Test that a failing sign-out call does not change the outcome."""
        runtime.store.create_user("mal@example.com", provider_subject="sub-mal")
        fake_idp.admin_status = 503

        with pytest.raises(AuthzError):
            await _sign_in(runtime, fake_idp, sub="sub-mal", email="mal@example.com", role="ADMIN")

        await runtime.auth.drain_side_calls()
        assert fake_idp.admin_paths() == ["/admin/users/sub-mal/global-sign-out"]

    async def test_signup_for_existing_account_redirects_with_hint(self, runtime):
        """Test that the provider's duplicate-account error becomes a user_exists redirect."""
        await runtime.gateway.initialize()
        redirect = runtime.auth.start_login("INVESTOR", "true")
        state = _query(redirect.authorization_url)["state"]

        outcome = await runtime.auth.handle_callback(
            {
                "state": state,
                "error": "invalid_request",
                "error_description": "An account with the given email already exists.",
            }
        )

        assert outcome.pair is None
        assert outcome.redirect_url.startswith("http://localhost:3000/get-started?")
        assert _query(outcome.redirect_url)["error"] == "user_exists"

    async def test_other_provider_errors_are_rejections(self, runtime):
        await runtime.gateway.initialize()
        state = _query(runtime.auth.start_login("INVESTOR", None).authorization_url)["state"]

        with pytest.raises(ProviderRejectedError):
            await runtime.auth.handle_callback(
                {"state": state, "error": "access_denied", "error_description": "User cancelled"}
            )

    async def test_missing_code_is_invalid(self, runtime):
        await runtime.gateway.initialize()
        state = _query(runtime.auth.start_login("INVESTOR", None).authorization_url)["state"]

        with pytest.raises(ValidationError):
            await runtime.auth.handle_callback({"state": state})

    async def test_missing_state_is_rejected(self, runtime):
        with pytest.raises(StateError):
            await runtime.auth.handle_callback({"code": "abc"})

    async def test_replayed_callback_is_rejected(self, runtime, fake_idp):
        """Test that a callback URL cannot be used twice."""
        await runtime.gateway.initialize()
        redirect = runtime.auth.start_login("INVESTOR", None)
        params = fake_idp.authorize(redirect.authorization_url, sub="sub-rp", email="rp@example.com")
        await runtime.auth.handle_callback(params)

        with pytest.raises(StateError):
            await runtime.auth.handle_callback(params)


class TestSessionOperations:
    async def test_logout_revokes_everything(self, runtime, fake_idp, device):
        """Test that logout revokes all tokens with one audit entry and signs out globally."""
        first = await _sign_in(runtime, fake_idp, sub="sub-lo", email="lo@example.com")
        second = await _sign_in(runtime, fake_idp, sub="sub-lo", email="lo@example.com")

        outcome = await runtime.auth.logout(
            second.pair.access_token, second.pair.refresh_token, device, "http://localhost:3001"
        )

        assert outcome.revoked_count == 2
        assert all(t.revoked for t in runtime.store.list_refresh_tokens(first.user.id))
        [entry] = runtime.store.list_access_logs(first.user.id, event_type="LOGOUT")
        assert entry.metadata["revoked_count"] == 2
        await runtime.auth.drain_side_calls()
        assert "/admin/users/sub-lo/global-sign-out" in fake_idp.admin_paths()
        assert outcome.redirect_url.startswith("http://idp.test/logout?")
        assert _query(outcome.redirect_url)["logout_uri"] == "http://localhost:3001"
        with pytest.raises(TokenRevokedError):
            runtime.tokens.rotate(first.pair.refresh_token)

    async def test_logout_identifies_user_from_refresh_token(self, runtime, fake_idp):
        """Test that an expired or missing access token still revokes via the refresh token."""
        outcome = await _sign_in(runtime, fake_idp, sub="sub-rf", email="rf@example.com", role="ISSUER")
        runtime.store.add_user_role(outcome.user.id, Role.ISSUER)

        result = await runtime.auth.logout(None, outcome.pair.refresh_token)

        assert result.user_id == outcome.user.id
        assert result.revoked_count == 1
        assert _query(result.redirect_url)["logout_uri"] == "http://localhost:3002"

    async def test_logout_without_session(self, runtime):
        await runtime.gateway.initialize()

        result = await runtime.auth.logout(None, None)

        assert result.user_id is None
        assert _query(result.redirect_url)["logout_uri"] == "http://localhost:3000"

    async def test_password_change_revokes_all_sessions(self, runtime, fake_idp):
        outcome = await _sign_in(runtime, fake_idp, sub="sub-pw", email="pw@example.com")

        count = await runtime.auth.password_changed(outcome.user)

        assert count == 1
        assert runtime.store.get_user(outcome.user.id).password_changed_at is not None
        [entry] = runtime.store.list_access_logs(outcome.user.id, event_type="PASSWORD_CHANGED")
        assert entry.metadata["revoked_count"] == 1

    async def test_switch_role(self, runtime, fake_idp):
        """Test that a user holding both roles can move between them."""
        runtime.store.create_user(
            "both@example.com", provider_subject="sub-both", roles=[Role.INVESTOR, Role.ISSUER]
        )
        outcome = await _sign_in(runtime, fake_idp, sub="sub-both", email="both@example.com")

        pair = runtime.auth.switch_role(outcome.user, Role.ISSUER, outcome.pair.refresh_token)

        assert runtime.tokens.verify_access_token(pair.access_token).active_role == Role.ISSUER
        [entry] = runtime.store.list_access_logs(outcome.user.id, event_type="ROLE_SWITCHED")
        assert entry.metadata["new_role"] == "ISSUER"

    async def test_switch_to_role_not_held(self, runtime, fake_idp):
        outcome = await _sign_in(runtime, fake_idp, sub="sub-one", email="one@example.com")

        with pytest.raises(AuthzError):
            runtime.auth.switch_role(outcome.user, Role.ADMIN, outcome.pair.refresh_token)

    async def test_complete_onboarding_grants_role(self, runtime, fake_idp):
        """Test that onboarding adds the role, sets the flag and syncs the provider."""
        outcome = await _sign_in(runtime, fake_idp, sub="sub-ob", email="ob@example.com", signup="true")

        user, pair = await runtime.auth.complete_onboarding(
            outcome.user, Role.INVESTOR, outcome.pair.refresh_token
        )

        assert user.roles == [Role.INVESTOR]
        assert runtime.store.get_user(user.id).investor_onboarding_completed is True
        assert runtime.tokens.verify_access_token(pair.access_token).roles == [Role.INVESTOR]
        assert runtime.store.list_access_logs(user.id, event_type="ROLE_ADDED")
        await runtime.auth.drain_side_calls()
        method, path, payload = fake_idp.admin_calls[-1]
        assert path == "/admin/users/sub-ob/attributes"
        assert payload == {"attributes": {"custom:roles": "INVESTOR"}}

    async def test_onboarding_cannot_grant_admin(self, runtime, fake_idp):
        outcome = await _sign_in(runtime, fake_idp, sub="sub-na", email="na@example.com")

        with pytest.raises(AuthzError):
            await runtime.auth.complete_onboarding(
                outcome.user, Role.ADMIN, outcome.pair.refresh_token
            )

        assert runtime.store.get_user(outcome.user.id).roles == []

    async def test_onboarding_with_consumed_token_grants_nothing(self, runtime, fake_idp):
        """Test that a failed rotation leaves the role and onboarding flag untouched."""
        outcome = await _sign_in(runtime, fake_idp, sub="sub-late", email="late@example.com", signup="true")
        runtime.tokens.rotate(outcome.pair.refresh_token)

        with pytest.raises(ReuseDetectedError):
            await runtime.auth.complete_onboarding(
                outcome.user, Role.ISSUER, outcome.pair.refresh_token
            )

        stored = runtime.store.get_user(outcome.user.id)
        assert stored.roles == []
        assert stored.issuer_onboarding_completed is False
        assert runtime.store.list_access_logs(stored.id, event_type="ROLE_ADDED") == []


class TestProviderSideCalls:
    async def test_slow_sign_out_does_not_hold_up_logout(self, runtime, fake_idp, monkeypatch):
        """Test that logout returns while the provider sign-out is still in flight."""
        outcome = await _sign_in(runtime, fake_idp, sub="sub-slow", email="slow@example.com")
        release = asyncio.Event()
        signed_out = []

        async def slow_sign_out(subject):
            await release.wait()
            signed_out.append(subject)
            return True

        monkeypatch.setattr(runtime.gateway, "force_global_sign_out", slow_sign_out)

        logout = await runtime.auth.logout(outcome.pair.access_token, None)

        assert logout.revoked_count == 1
        assert runtime.auth.pending_side_calls == 1
        assert signed_out == []
        release.set()
        await runtime.auth.drain_side_calls()
        assert signed_out == ["sub-slow"]
        assert runtime.auth.pending_side_calls == 0

    async def test_drain_cancels_calls_past_the_deadline(self, runtime, fake_idp, monkeypatch):
        outcome = await _sign_in(runtime, fake_idp, sub="sub-hang", email="hang@example.com")

        async def hanging_sign_out(subject):
            await asyncio.Event().wait()

        monkeypatch.setattr(runtime.gateway, "force_global_sign_out", hanging_sign_out)
        await runtime.auth.password_changed(outcome.user)

        await runtime.auth.drain_side_calls(timeout=0.01)

        assert runtime.auth.pending_side_calls == 0
