import asyncio
import http.client
import shutil
import tempfile
import threading
import unittest
from urllib.parse import urlencode

import websockets

from live_reload import LiveReloadBroadcaster
from scaler_proxy import ServerSettings, create_server


class TestBroadcaster(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.broadcaster = LiveReloadBroadcaster()
        self.broadcaster.start()

    async def asyncTearDown(self):
        await asyncio.to_thread(self.broadcaster.stop)

    async def wait_for_clients(self, count, timeout=3.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.broadcaster.client_count != count:
            if loop.time() > deadline:
                self.fail(f'expected {count} clients, have {self.broadcaster.client_count}')
            await asyncio.sleep(0.05)

    async def test_broadcast_reaches_every_client(self):
        uri = f'ws://127.0.0.1:{self.broadcaster.port}'
        async with websockets.connect(uri) as a, websockets.connect(uri) as b:
            await self.wait_for_clients(2)
            self.assertEqual(self.broadcaster.broadcast(), 2)
            self.assertEqual(await asyncio.wait_for(a.recv(), 2), 'reload')
            self.assertEqual(await asyncio.wait_for(b.recv(), 2), 'reload')

    async def test_disconnected_clients_are_removed(self):
        uri = f'ws://127.0.0.1:{self.broadcaster.port}'
        async with websockets.connect(uri):
            await self.wait_for_clients(1)
        await self.wait_for_clients(0)
        self.assertEqual(self.broadcaster.broadcast(), 0)

    async def test_broadcast_without_server_is_noop(self):
        idle = LiveReloadBroadcaster()
        self.assertEqual(idle.broadcast(), 0)


class TestReloadOnSave(unittest.IsolatedAsyncioTestCase):
    """End to end: a viewer connected through the proxy's own origin."""

    async def asyncSetUp(self):
        self.data_dir = tempfile.mkdtemp()
        self.server = create_server(ServerSettings(host='127.0.0.1', port=0, data_dir=self.data_dir))
        self.port = self.server.server_address[1]
        threading.Thread(target=self.server.serve_forever, daemon=True).start()

    async def asyncTearDown(self):
        await asyncio.to_thread(self.server.shutdown)
        await asyncio.to_thread(self.server.server_close)
        shutil.rmtree(self.data_dir, ignore_errors=True)

    def http(self, method, path, body=None, headers=None):
        conn = http.client.HTTPConnection('127.0.0.1', self.port, timeout=10)
        try:
            conn.request(method, path, body=body, headers=headers or {})
            resp = conn.getresponse()
            return resp.status, resp.getheader('Location'), resp.read()
        finally:
            conn.close()

    async def wait_for_viewers(self, count, timeout=3.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.server.broadcaster.client_count != count:
            if loop.time() > deadline:
                self.fail(f'expected {count} viewers, have {self.server.broadcaster.client_count}')
            await asyncio.sleep(0.05)

    async def test_saving_config_reloads_viewer_once(self):
        form = urlencode({
            'targetUrl': 'https://example.com/a',
            'scaleFactor': '1.5',
            'scrollSpeed': '50',
            'scrollSequence': '0-500,1200-1800',
        })
        async with websockets.connect(f'ws://127.0.0.1:{self.port}/') as viewer:
            await self.wait_for_viewers(1)

            status, location, _ = await asyncio.to_thread(
                self.http, 'POST', '/config', form,
                {'Content-Type': 'application/x-www-form-urlencoded'},
            )
            self.assertEqual(status, 302)
            self.assertEqual(location, '/config?saved=true')

            self.assertEqual(await asyncio.wait_for(viewer.recv(), 3), 'reload')
            with self.assertRaises(asyncio.TimeoutError):
                await asyncio.wait_for(viewer.recv(), 0.5)

        status, _, page = await asyncio.to_thread(self.http, 'GET', '/config?saved=true')
        self.assertEqual(status, 200)
        self.assertIn(b'1.5', page)
        self.assertIn(b'0-500,1200-1800', page)
        self.assertIn(b'banner success', page)

    async def test_reset_and_clear_cookies_reload_viewer(self):
        async with websockets.connect(f'ws://127.0.0.1:{self.port}/') as viewer:
            await self.wait_for_viewers(1)
            for path in ('/reset', '/clear-cookies'):
                status, location, _ = await asyncio.to_thread(self.http, 'POST', path)
                self.assertEqual(status, 302)
                self.assertEqual(location, '/config')
                self.assertEqual(await asyncio.wait_for(viewer.recv(), 3), 'reload')


if __name__ == '__main__':
    unittest.main()
