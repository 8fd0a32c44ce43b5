# -*- coding: utf-8 -*-

from __future__ import annotations

import unittest

import httpx

from nutrilog.network import NetworkMonitor


class TestNetworkMonitor(unittest.IsolatedAsyncioTestCase):
    async def test_listeners_see_changes_only(self) -> None:
        monitor = NetworkMonitor(connected=True)
        seen = []
        monitor.add_listener(seen.append)

        monitor.set_connected(True)
        monitor.set_connected(False)
        monitor.set_connected(False)
        monitor.set_connected(True)

        self.assertEqual(seen, [False, True])
        monitor.remove_listener(seen.append)
        monitor.set_connected(False)
        self.assertEqual(seen, [False, True])

    async def test_listener_failure_is_logged(self) -> None:
        monitor = NetworkMonitor(connected=False)
        seen = []

        def broken(connected: bool) -> None:
            raise RuntimeError("listener bug")

        monitor.add_listener(broken)
        monitor.add_listener(seen.append)
        with self.assertLogs("nutrilog.network", level="ERROR"):
            monitor.set_connected(True)
        self.assertEqual(seen, [True])

    async def test_probe_marks_offline_and_back_online(self) -> None:
        up = {"value": False}

        def handler(request: httpx.Request) -> httpx.Response:
            if not up["value"]:
                raise httpx.ConnectError("unreachable", request=request)
            return httpx.Response(404)

        monitor = NetworkMonitor(
            connected=True,
            probe_url="http://vision.local/",
            transport=httpx.MockTransport(handler),
        )
        seen = []
        monitor.add_listener(seen.append)

        self.assertFalse(await monitor.probe())
        self.assertFalse(monitor.is_connected())

        # Any HTTP answer, even an error status, means the host is reachable.
        up["value"] = True
        self.assertTrue(await monitor.probe())
        self.assertEqual(seen, [False, True])

    async def test_probe_without_url_keeps_state(self) -> None:
        monitor = NetworkMonitor(connected=False)
        self.assertFalse(await monitor.probe())
        self.assertFalse(monitor.is_connected())


if __name__ == "__main__":
    unittest.main()
