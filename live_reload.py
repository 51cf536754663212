"""
Live-Reload Broadcaster.

A websockets server on an internal loopback port, running its own asyncio loop
in a background thread. The HTTP server bridges WebSocket upgrades on ``/`` to
it, so viewers connect back to the proxy's own origin. Delivery is
best-effort: no acknowledgement, no retry, no backpressure.
"""

import asyncio
import logging
import threading

import websockets

logger = logging.getLogger(__name__)

RELOAD_MESSAGE = 'reload'


class LiveReloadBroadcaster:
    def __init__(self, host='127.0.0.1', port=0):
        self.host = host
        self.port = port
        self.clients = set()
        self._loop = None
        self._thread = None
        self._stopped = None
        self._ready = threading.Event()

    @property
    def running(self):
        return self._loop is not None and self._loop.is_running()

    @property
    def client_count(self):
        return len(self.clients)

    async def _handler(self, websocket):
        self.clients.add(websocket)
        logger.info(f"Client connected for live reload. Total: {len(self.clients)}")
        try:
            # Viewers never send anything meaningful; drain until they leave
            async for _ in websocket:
                pass
        except websockets.ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)
            logger.info(f"Client disconnected from live reload. Total: {len(self.clients)}")

    async def _serve(self):
        self._stopped = asyncio.Event()
        async with websockets.serve(self._handler, self.host, self.port, origins=None) as server:
            self.port = server.sockets[0].getsockname()[1]
            self._ready.set()
            await self._stopped.wait()

    def _run(self):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._serve())
        except OSError as e:
            logger.error(f"Live-reload server failed on {self.host}:{self.port} - {e}")
        finally:
            self._ready.set()
            self._loop.close()

    def start(self, timeout=5):
        self._thread = threading.Thread(target=self._run, name='live-reload', daemon=True)
        self._thread.start()
        self._ready.wait(timeout)
        if not self.running:
            raise RuntimeError('Live-reload server did not start')
        logger.info(f"Live-reload channel listening on ws://{self.host}:{self.port}")

    def stop(self, timeout=5):
        if self.running:
            self._loop.call_soon_threadsafe(self._stopped.set)
        if self._thread:
            self._thread.join(timeout)

    async def _broadcast(self, message):
        if self.clients:
            await asyncio.gather(*[client.send(message) for client in list(self.clients)],
                                 return_exceptions=True)

    def broadcast(self, message=RELOAD_MESSAGE):
        """
        Schedule ``message`` for every connected client and return immediately.

        Safe to call from any thread. Returns the number of clients targeted.
        """
        if not self.running:
            logger.warning("Live-reload server not running; skipping broadcast")
            return 0
        count = len(self.clients)
        logger.info(f"Broadcasting {message} message to {count} clients.")
        asyncio.run_coroutine_threadsafe(self._broadcast(message), self._loop)
        return count
