"""
Test Clinic Core Bootstrap and CLI

Wiring from configuration with in-memory backends, live override refresh,
and the command line entry point.
"""

import asyncio
import json

import pytest

from clinicore import Actor, ChangeHandlers, ChangeKind, CheckOutcome, ClinicCore, Role, SubscriptionTopic
from clinicore.__main__ import main
from clinicore.config import ClinicConfig
from clinicore.errors import OfflineError
from clinicore.realtime import InMemoryChangeFeed


async def drain(rounds: int = 20):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def offline_env(monkeypatch, tmp_path):
    """No Supabase credentials and no clinic.yaml on the search path."""
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_KEY", raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestClinicCore:
    """Tests for the bootstrap facade"""

    @pytest.mark.asyncio
    async def test_in_memory_fallback(self, offline_env):
        core = await ClinicCore.from_config(ClinicConfig.from_dict({}))

        assert core.store.is_in_memory
        assert isinstance(core.subscriptions.feed, InMemoryChangeFeed)
        assert core.probe is None
        assert core.client is None
        await core.stop()

    @pytest.mark.asyncio
    async def test_check_against_seeded_store(self, offline_env):
        async with await ClinicCore.from_config(ClinicConfig.from_dict({})) as core:
            await core.store.seed_defaults(core.catalog)
            receptionist = Actor("rec-1", Role.RECEPTIONIST)
            doctor = Actor("doc-1", Role.DOCTOR)

            await core.resolve(receptionist)
            await core.resolve(doctor)

            assert core.check(receptionist, "create_appointments")
            assert not core.check(doctor, "create_appointments")
            assert core.evaluate(Actor("admin-1", Role.ADMIN), "manage_settings") is CheckOutcome.ALLOW

    @pytest.mark.asyncio
    async def test_override_changes_refresh_resolved_roles(self, offline_env):
        async with await ClinicCore.from_config(ClinicConfig.from_dict({})) as core:
            await core.store.seed_defaults(core.catalog)
            doctor = Actor("doc-1", Role.DOCTOR)
            await core.resolve(doctor)
            assert not core.check(doctor, "create_appointments")

            await core.store.grant(Role.DOCTOR, "create_appointments")
            core.subscriptions.feed.emit("role_permissions", ChangeKind.INSERT, {"role": "doctor"})
            await drain()

            assert core.check(doctor, "create_appointments")

    @pytest.mark.asyncio
    async def test_watch_disabled(self, offline_env):
        config = ClinicConfig.from_dict({"authorization": {"watch_overrides": False}})
        async with await ClinicCore.from_config(config) as core:
            assert core.subscriptions.active_topics() == []

    @pytest.mark.asyncio
    async def test_subscribe_and_connectivity(self, offline_env):
        async with await ClinicCore.from_config(ClinicConfig.from_dict({})) as core:
            seen = []
            topic = SubscriptionTopic("appointments")
            handle = await core.subscribe(topic, ChangeHandlers(on_insert=seen.append))

            core.subscriptions.feed.emit("appointments", ChangeKind.INSERT, {"id": 1})
            await drain()
            await core.unsubscribe(handle)

            assert len(seen) == 1
            assert core.current_state().value == "online"
            core.monitor.signal(False)
            with pytest.raises(OfflineError):
                core.monitor.require_online("booking")

    @pytest.mark.asyncio
    async def test_stop_closes_channels(self, offline_env):
        core = await ClinicCore.from_config(ClinicConfig.from_dict({}))
        await core.start()
        feed = core.subscriptions.feed
        assert len(feed.active_channels()) == 2

        await core.stop()

        assert feed.active_channels() == []


class TestCommandLine:
    """Tests for python -m clinicore"""

    @pytest.mark.asyncio
    async def test_check_admin(self, offline_env, capsys):
        code = await main(["check", "--role", "admin", "--capability", "manage_users"])
        result = json.loads(capsys.readouterr().out)

        assert code == 0
        assert result["outcome"] == "allow"
        assert result["resolution"] == "bypass"

    @pytest.mark.asyncio
    async def test_check_denied_on_empty_store(self, offline_env, capsys):
        code = await main(["check", "--role", "patient", "--capability", "view_dashboard"])
        result = json.loads(capsys.readouterr().out)

        assert code == 1
        assert result["outcome"] == "deny"

    @pytest.mark.asyncio
    async def test_capabilities_for_admin(self, offline_env, capsys):
        code = await main(["capabilities", "--role", "admin"])
        lines = capsys.readouterr().out.split()

        assert code == 0
        assert "manage_permissions" in lines

    @pytest.mark.asyncio
    async def test_init_config(self, offline_env, capsys):
        code = await main(["init-config", "--output", str(offline_env / "clinic.yaml")])

        assert code == 0
        assert (offline_env / "clinic.yaml").exists()

    @pytest.mark.asyncio
    async def test_seed(self, offline_env, capsys):
        code = await main(["seed"])
        result = json.loads(capsys.readouterr().out)

        assert code == 0
        assert result["permissions"] > 0
