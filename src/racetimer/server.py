"""HTTP control routes, WebSocket relay and process wiring."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from aiohttp import WSMsgType, web

from .control import ControlPlane
from .exceptions import ChannelClosedError, LinkError, PersistenceError
from .persistence import SqlitePersistence
from .relay import BroadcastHub
from .transponder.commands import CommandChannel
from .transponder.config import TimerConfig
from .transponder.link import open_link
from .transponder.worker import NodeEvent, TimerWorker

logger = logging.getLogger(__name__)

CONTROL_KEY = web.AppKey("control", ControlPlane)
HUB_KEY = web.AppKey("hub", BroadcastHub)

routes = web.RouteTableDef()


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


@routes.get("/ping")
async def ping(request: web.Request) -> web.Response:
    return web.Response(text="pong")


@routes.get("/increment")
async def increment(request: web.Request) -> web.Response:
    try:
        await request.app[CONTROL_KEY].increment()
    except ChannelClosedError as exc:
        return _error(500, str(exc))
    return web.Response(status=200)


@routes.get("/get_count")
async def get_count(request: web.Request) -> web.Response:
    try:
        count = await request.app[CONTROL_KEY].get_count()
    except (ChannelClosedError, asyncio.TimeoutError) as exc:
        logger.error("No count from worker: %r", exc)
        return _error(500, "worker unavailable")
    return web.json_response(count)


@routes.route("*", "/start_race")
async def start_race(request: web.Request) -> web.Response:
    try:
        race_id = await request.app[CONTROL_KEY].start_race()
    except (ChannelClosedError, PersistenceError) as exc:
        logger.error("Cannot start race: %s", exc)
        return _error(500, str(exc))
    return web.json_response({"race_id": race_id})


@routes.route("*", "/stop_race")
async def stop_race(request: web.Request) -> web.Response:
    try:
        await request.app[CONTROL_KEY].stop_race()
    except ChannelClosedError as exc:
        return _error(500, str(exc))
    return web.Response(status=200)


@routes.get("/debug")
async def debug(request: web.Request) -> web.Response:
    race_id: Optional[int] = None
    if "race_id" in request.query:
        try:
            race_id = int(request.query["race_id"])
        except ValueError:
            return _error(400, "race_id must be an integer")
    try:
        nodes = await request.app[CONTROL_KEY].debug(race_id)
    except PersistenceError as exc:
        logger.error("Failed to fetch nodes: %s", exc)
        return _error(500, str(exc))
    return web.json_response([node.as_dict() for node in nodes])


@routes.get("/races")
async def races(request: web.Request) -> web.Response:
    persistence = request.app[CONTROL_KEY].persistence
    try:
        records = await persistence.list_races()
    except PersistenceError as exc:
        return _error(500, str(exc))
    return web.json_response([record.as_dict() for record in records])


@routes.get("/ws")
async def relay(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    subscription = request.app[HUB_KEY].subscribe()
    logger.debug("Accepted WebSocket peer %d from %s", subscription.peer_id, request.remote)

    async def forward() -> None:
        while True:
            message = await subscription.get()
            if message is None or ws.closed:
                return
            try:
                await ws.send_str(message)
            except ConnectionResetError as exc:
                logger.debug("Peer %d disconnected abruptly: %s", subscription.peer_id, exc)
                return

    forward_task = asyncio.create_task(forward(), name=f"relay-peer-{subscription.peer_id}")
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                subscription.publish(msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.debug("Peer %d disconnected abruptly: %s", subscription.peer_id, ws.exception())
    finally:
        forward_task.cancel()
        try:
            await asyncio.gather(forward_task, return_exceptions=True)
        finally:
            subscription.close()
    return ws


def create_app(control: ControlPlane, hub: BroadcastHub) -> web.Application:
    app = web.Application()
    app[CONTROL_KEY] = control
    app[HUB_KEY] = hub
    app.add_routes(routes)
    return app


async def serve(config: TimerConfig, seed: Optional[int] = None) -> None:
    """Run until cancelled. Raises PortUnavailableError if the link cannot be opened."""
    link = open_link(config.serial, simulate=config.simulate, seed=seed)
    try:
        info = await asyncio.to_thread(link.identify)
        logger.info("Transponder clock=%d ms firmware=%d", info.clock_ms, info.firmware_version)
    except LinkError as exc:
        logger.warning("Could not identify transponder: %s", exc)

    persistence = SqlitePersistence(config.database)
    try:
        await persistence.open()
    except PersistenceError:
        link.close()
        raise
    hub = BroadcastHub(config.host.broadcast_buffer)
    channel = CommandChannel(config.host.queue_maxsize)

    on_event = None
    if config.host.broadcast_events:

        def on_event(event: NodeEvent) -> None:
            hub.publish(json.dumps(event.as_dict()))

    worker = TimerWorker(link, channel, persistence, config.detector, config.host, on_event=on_event)
    control = ControlPlane(channel, persistence, reply_timeout=config.host.reply_timeout)
    runner = web.AppRunner(create_app(control, hub))
    await runner.setup()
    worker_task = asyncio.create_task(worker.run())
    try:
        site = web.TCPSite(runner, config.server.host, config.server.port)
        await site.start()
        logger.info("Listening on http://%s:%d", config.server.host, config.server.port)
        await worker_task
    finally:
        await runner.cleanup()
        if not worker_task.done():
            worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)
        await persistence.close()
