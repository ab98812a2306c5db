"""Tests for account linking.

Identities only merge through a verified email or phone held by exactly one
existing user.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from warden.service.linking import LinkingCallbacks, LinkingPolicy, LinkRequest
from warden.service.providers.credentials import Password
from warden.service.providers.email import EmailProvider, PhoneProvider
from warden.service.providers.oauth import OAuthProvider
from warden.service.sessions import AuthContext
from warden.storage.errors import ConstraintViolation

FAR_FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def linking(memory_store, clock):
    return LinkingPolicy(memory_store, clock=clock)


@pytest.fixture
def github():
    return OAuthProvider(id="github", client_id="cid", client_secret="secret")


def _verified_user(store, clock, **fields):
    if "email" in fields:
        fields["email_verification_time"] = clock()
    if "phone" in fields:
        fields["phone_verification_time"] = clock()
    return store.create_user(**fields)


class TestLinkingSafety:
    """Tests for cases that must never merge identities."""

    async def test_unverified_existing_user_not_linked(self, linking, memory_store, github):
        """Test a match against an unverified email creates a new user."""
        existing = memory_store.create_user(email="ada@example.com")

        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={"email": "ada@example.com", "email_verified": True},
                provider_account_id="gh-1",
            )
        )

        assert result.user.id != existing.id

    async def test_password_provider_does_not_link_by_email(
        self, linking, memory_store, clock
    ):
        """Test an unverified credentials sign-up never adopts a verified user."""
        existing = _verified_user(memory_store, clock, email="ada@example.com")

        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=Password(),
                profile={"email": "ada@example.com"},
                provider_account_id="ada@example.com",
            )
        )

        assert result.user.id != existing.id
        assert result.user.email_verification_time is None

    async def test_oauth_explicitly_unverified_email_not_linked(
        self, linking, memory_store, clock, github
    ):
        """Test a provider reporting an unverified email does not link."""
        existing = _verified_user(memory_store, clock, email="ada@example.com")

        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={"email": "ada@example.com", "email_verified": False},
                provider_account_id="gh-1",
            )
        )

        assert result.user.id != existing.id

    async def test_ambiguous_email_match_creates_new_user(
        self, linking, memory_store, clock, github
    ):
        """Test two verified users with the same email block linking."""
        first = _verified_user(memory_store, clock, email="dup@example.com")
        second = _verified_user(memory_store, clock, email="dup@example.com")

        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={"email": "dup@example.com", "email_verified": True},
                provider_account_id="gh-1",
            )
        )

        assert result.user.id not in {first.id, second.id}

    async def test_email_and_phone_pointing_to_different_users(
        self, linking, memory_store, clock, github
    ):
        """Test conflicting email and phone matches create a new user."""
        by_email = _verified_user(memory_store, clock, email="ada@example.com")
        by_phone = _verified_user(memory_store, clock, phone="+15550001")

        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={
                    "email": "ada@example.com",
                    "email_verified": True,
                    "phone": "+15550001",
                    "phone_verified": True,
                },
                provider_account_id="gh-1",
            )
        )

        assert result.user.id not in {by_email.id, by_phone.id}


class TestLinkingCorrectness:
    """Tests for cases that must link to the existing user."""

    async def test_verified_unique_email_links(self, linking, memory_store, clock, github):
        """Test a verified email held by one user links the new account."""
        existing = _verified_user(memory_store, clock, email="ada@example.com")

        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={"email": "ada@example.com", "email_verified": True, "name": "Ada"},
                provider_account_id="gh-1",
            )
        )

        assert result.user.id == existing.id
        assert result.user.name == "Ada"
        assert result.account.email_verified == "ada@example.com"

    async def test_email_provider_links_by_email(self, linking, memory_store, clock):
        """Test email providers always link on the identifier they deliver to."""
        existing = _verified_user(memory_store, clock, email="ada@example.com")

        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=EmailProvider(id="email"),
                profile={"email": "ada@example.com"},
                provider_account_id="ada@example.com",
            )
        )

        assert result.user.id == existing.id

    async def test_phone_provider_links_by_phone(self, linking, memory_store, clock):
        """Test phone providers link on a verified phone number."""
        existing = _verified_user(memory_store, clock, phone="+15550001")

        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=PhoneProvider(id="sms"),
                profile={"phone": "+15550001"},
                provider_account_id="+15550001",
            )
        )

        assert result.user.id == existing.id

    async def test_existing_account_keeps_its_user(self, linking, memory_store, github):
        """Test a returning account updates its own user."""
        first = await linking.upsert_user_and_account(
            LinkRequest(provider=github, profile={"name": "Ada"}, provider_account_id="gh-1")
        )
        again = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={"name": "Ada L."},
                provider_account_id="gh-1",
                existing_account=first.account,
            )
        )

        assert again.user.id == first.user.id
        assert again.user.name == "Ada L."
        assert len(memory_store.list_user_accounts(first.user.id)) == 1

    async def test_unknown_profile_keys_go_to_meta(self, linking, github):
        """Test profile keys without a user column are kept in meta."""
        first = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={"name": "Ada", "locale": "en"},
                provider_account_id="gh-1",
            )
        )
        again = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={"company": "Analytical"},
                provider_account_id="gh-1",
                existing_account=first.account,
            )
        )

        assert again.user.meta == {"locale": "en", "company": "Analytical"}

    async def test_verification_time_stamped(self, linking, clock, github):
        """Test a verified email sets the user's verification time."""
        result = await linking.upsert_user_and_account(
            LinkRequest(
                provider=github,
                profile={"email": "new@example.com", "email_verified": True},
                provider_account_id="gh-1",
            )
        )

        assert result.user.email_verification_time == clock()

    async def test_foreign_current_session_dropped(self, linking, memory_store, github):
        """Test linking to another user ends the caller's session."""
        other = memory_store.create_user()
        session = memory_store.create_session(other.id, FAR_FUTURE)

        result = await linking.upsert_user_and_account(
            LinkRequest(provider=github, profile={}, provider_account_id="gh-1"),
            current=AuthContext(other.id, session.id),
        )

        assert result.user.id != other.id
        assert memory_store.get_session(session.id) is None

    async def test_failed_account_write_undoes_user_write(
        self, linking, memory_store, clock, github
    ):
        """Test a failing account write leaves no half-linked user behind."""
        existing = _verified_user(memory_store, clock, email="ada@example.com")

        with patch.object(
            memory_store, "create_account", side_effect=ConstraintViolation("duplicate")
        ):
            with pytest.raises(ConstraintViolation):
                await linking.upsert_user_and_account(
                    LinkRequest(
                        provider=github,
                        profile={"email": "ada@example.com", "email_verified": True, "name": "Ada"},
                        provider_account_id="gh-1",
                    )
                )

        assert memory_store.get_user(existing.id).name is None
        assert list(memory_store.users) == [existing.id]


class TestLinkingCallbacks:
    """Tests for user creation hooks."""

    async def test_create_or_update_user_overrides_default(self, memory_store, clock, github):
        """Test the create hook decides which user gets the account."""
        target = memory_store.create_user(name="Chosen")
        create = AsyncMock(return_value=target.id)
        linking = LinkingPolicy(
            memory_store, callbacks=LinkingCallbacks(create_or_update_user=create), clock=clock
        )

        result = await linking.upsert_user_and_account(
            LinkRequest(provider=github, profile={"name": "Ada"}, provider_account_id="gh-1")
        )

        assert result.user.id == target.id
        create.assert_awaited_once_with(None, {"name": "Ada"}, github)

    async def test_after_hook_receives_ids(self, memory_store, clock, github):
        """Test the after hook sees the new and previous user ids."""
        after = MagicMock(return_value=None)
        linking = LinkingPolicy(
            memory_store,
            callbacks=LinkingCallbacks(after_user_created_or_updated=after),
            clock=clock,
        )

        result = await linking.upsert_user_and_account(
            LinkRequest(provider=github, profile={}, provider_account_id="gh-1")
        )

        after.assert_called_once_with(result.user.id, None, {}, github)
