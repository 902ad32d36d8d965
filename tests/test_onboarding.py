"""Unit tests for OnboardingService: linking accounts and merging re-linked households."""

import pytest

from services.errors import AuthError, NoHouseholdError
from services.onboarding import OnboardingService
from services.session_store import SONOS_SESSIONS, SPOTIFY_SESSIONS


@pytest.fixture
def onboarding(store, registry, sonos_tokens, spotify_tokens, build_sonos, build_spotify):
    return OnboardingService(
        store=store,
        registry=registry,
        sonos_tokens=sonos_tokens,
        spotify_tokens=spotify_tokens,
        build_sonos=build_sonos,
        build_spotify=build_spotify,
    )


class TestDeviceLink:
    @pytest.mark.asyncio
    async def test_new_household_creates_session(self, onboarding, registry, store):
        user_id = await onboarding.complete_device_link("sonos-code")

        row = store.get(SONOS_SESSIONS, user_id)
        assert row["household"] == "HH1"
        assert row["group"] == "G1"
        session = registry.get(user_id)
        assert session is not None
        assert session.fully_linked is False

    @pytest.mark.asyncio
    async def test_account_without_household_is_discarded(self, onboarding, store, sonos_api):
        sonos_api.households = []

        with pytest.raises(NoHouseholdError):
            await onboarding.complete_device_link("sonos-code")

        assert store.user_ids() == []
        assert store.find(SONOS_SESSIONS) == []

    @pytest.mark.asyncio
    async def test_rejected_code_leaves_nothing_behind(self, onboarding, store, sonos_token_endpoint):
        sonos_token_endpoint.reject = True

        with pytest.raises(AuthError):
            await onboarding.complete_device_link("bad-code")

        assert store.user_ids() == []

    @pytest.mark.asyncio
    async def test_relink_adopts_fully_linked_host(self, onboarding, registry, store, link_host):
        existing = link_host(household="HH1")

        adopted = await onboarding.complete_device_link("sonos-code")

        assert adopted == existing
        assert store.user_ids() == [existing]
        assert [row["user_id"] for row in store.find(SONOS_SESSIONS, household="HH1")] == [existing]
        assert registry.get(existing).fully_linked is True

    @pytest.mark.asyncio
    async def test_half_linked_duplicates_keep_the_oldest(self, onboarding, store, link_host):
        oldest = link_host(household="HH1", spotify=False)
        link_host(household="HH1", spotify=False)

        adopted = await onboarding.complete_device_link("sonos-code")

        assert adopted == oldest
        assert store.user_ids() == [oldest]
        assert len(store.find(SONOS_SESSIONS, household="HH1")) == 1

    @pytest.mark.asyncio
    async def test_other_households_are_untouched(self, onboarding, store, link_host):
        neighbour = link_host(household="HH9")

        adopted = await onboarding.complete_device_link("sonos-code")

        assert adopted != neighbour
        assert sorted(store.user_ids()) == sorted([neighbour, adopted])


class TestStreamingLink:
    @pytest.mark.asyncio
    async def test_links_spotify_and_attaches_queue(self, onboarding, registry, store, link_host):
        user_id = link_host(spotify=False)
        session = await registry.get_or_load(user_id)
        assert session.queue is None

        await onboarding.complete_streaming_link(user_id, "spotify-code")

        row = store.get(SPOTIFY_SESSIONS, user_id)
        assert row["access_token"] == "spotify-access-1"
        assert row["spotify_user_id"] == "host-spotify"
        assert session.fully_linked is True
        assert session.queue is not None
        assert session.events is not None

    @pytest.mark.asyncio
    async def test_requires_sonos_first(self, onboarding, store):
        with pytest.raises(AuthError):
            await onboarding.complete_streaming_link(store.create_user(), "spotify-code")


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_removes_everything(self, onboarding, registry, store, link_host, sonos_api):
        user_id = link_host()
        await registry.get_or_load(user_id)
        sonos_api.calls.clear()

        await onboarding.logout(user_id)

        assert registry.get(user_id) is None
        assert store.user_ids() == []
        assert store.get(SONOS_SESSIONS, user_id) is None
        assert store.get(SPOTIFY_SESSIONS, user_id) is None
        assert len(sonos_api.calls_to("DELETE", "/subscription")) == 2
