"""
Test Connectivity Monitor

Transition de-duplication, sequencing, listener removal, the online guard
for mutating callers, and the HTTP reachability probe.
"""

import asyncio

import httpx
import pytest

from clinicore.core.connectivity import (
    ConnectivityMonitor,
    ConnectivityState,
    ReachabilityProbe,
)
from clinicore.errors import OfflineError


class TestConnectivityMonitor:
    """Tests for the two-state monitor"""

    def test_initial_state(self):
        assert ConnectivityMonitor().current_state() is ConnectivityState.ONLINE
        assert ConnectivityMonitor(initially_online=False).current_state() is ConnectivityState.OFFLINE

    def test_repeated_signals_fire_once(self):
        monitor = ConnectivityMonitor()
        seen = []
        monitor.on_transition(seen.append)

        assert monitor.signal(True) is None
        first = monitor.signal(False)
        assert monitor.signal(False) is None
        second = monitor.signal(True)

        assert seen == [first, second]
        assert first.current is ConnectivityState.OFFLINE
        assert second.is_reconnect
        assert not first.is_reconnect

    def test_sequence_increases(self):
        monitor = ConnectivityMonitor()
        sequences = [monitor.signal(online).sequence for online in (False, True, False, True)]
        assert sequences == [1, 2, 3, 4]

    def test_remove_handler(self):
        monitor = ConnectivityMonitor()
        seen = []
        remove = monitor.on_transition(seen.append)
        monitor.signal(False)
        remove()
        remove()
        monitor.signal(True)
        assert len(seen) == 1

    def test_failing_handler_does_not_block_others(self):
        monitor = ConnectivityMonitor()
        seen = []

        def broken(transition):
            raise RuntimeError("boom")

        monitor.on_transition(broken)
        monitor.on_transition(seen.append)
        monitor.signal(False)

        assert len(seen) == 1
        assert monitor.current_state() is ConnectivityState.OFFLINE

    @pytest.mark.asyncio
    async def test_coroutine_handler_is_scheduled(self):
        monitor = ConnectivityMonitor()
        seen = []

        async def handler(transition):
            seen.append(transition.current)

        monitor.on_transition(handler)
        monitor.signal(False)
        await asyncio.sleep(0)

        assert seen == [ConnectivityState.OFFLINE]

    def test_require_online(self):
        monitor = ConnectivityMonitor()
        monitor.require_online("booking")
        monitor.signal(False)
        with pytest.raises(OfflineError) as exc_info:
            monitor.require_online("booking")
        assert "booking" in str(exc_info.value)


class TestReachabilityProbe:
    """Tests for the HTTP probe using httpx.MockTransport"""

    @pytest.mark.asyncio
    async def test_any_response_counts_as_reachable(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(401)

        monitor = ConnectivityMonitor(initially_online=False)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        probe = ReachabilityProbe(
            monitor, "https://clinic.example/rest/v1/", headers={"apikey": "anon"}, client=client
        )

        assert await probe.probe_once() is True
        assert monitor.is_online
        assert requests[0].headers["apikey"] == "anon"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_marks_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        monitor = ConnectivityMonitor()
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        probe = ReachabilityProbe(monitor, "https://clinic.example/rest/v1/", client=client)

        assert await probe.probe_once() is False
        assert monitor.current_state() is ConnectivityState.OFFLINE
        await client.aclose()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        monitor = ConnectivityMonitor(initially_online=False)
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        probe = ReachabilityProbe(monitor, "https://clinic.example/", interval=60, client=client)

        probe.start()
        assert probe.is_running
        await asyncio.sleep(0.01)
        assert monitor.is_online

        await probe.stop()
        assert not probe.is_running
        # Caller-owned client stays open
        assert not client.is_closed
        await client.aclose()
