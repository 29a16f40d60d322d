from __future__ import annotations

import asyncio
import contextlib
import time
from pathlib import Path

from fastapi import FastAPI, HTTPException

from npcbridge.api.models import (
    ChatMessageIn,
    ControlCreatureAddIn,
    ControlCreatureRemoveIn,
    ControlTargetIn,
)
from npcbridge.bridge.queues import LocationKey
from npcbridge.config.settings import BridgeSettings, load_env_file
from npcbridge.host.world import StubWorld, Vec3
from npcbridge.session import SessionContext

# server/npcbridge/main.py -> repo root is 2 levels up from "server"
load_env_file(Path(__file__).resolve().parents[2] / ".env")


def create_app(
    settings: BridgeSettings | None = None,
    world: StubWorld | None = None,
    session: SessionContext | None = None,
) -> FastAPI:
    settings = settings or (session.settings if session is not None else BridgeSettings.from_env())
    world = world or (session.world if session is not None else StubWorld())  # type: ignore[assignment]
    session = session or SessionContext(world, settings)
    world.attach_hook(session)

    app = FastAPI(title="NPC Chat Bridge", version="0.1.0")
    app.state.world = world
    app.state.session = session

    async def tick_loop() -> None:
        last_update = time.perf_counter()
        while True:
            await asyncio.sleep(settings.tick_interval_sec)

            started_at = time.perf_counter()
            diff_ms = int((started_at - last_update) * 1000.0)
            last_update = started_at
            world.update(diff_ms)

            tick_ms = (time.perf_counter() - started_at) * 1000.0
            avg = getattr(app.state, "avg_tick_ms", 0.0)
            if avg <= 0.0:
                app.state.avg_tick_ms = tick_ms
            else:
                app.state.avg_tick_ms = (avg * 0.88) + (tick_ms * 0.12)
            app.state.last_tick_ms = tick_ms

    @app.on_event("startup")
    async def startup() -> None:
        app.state.last_tick_ms = 0.0
        app.state.avg_tick_ms = 0.0
        session.start()
        app.state.tick_task = asyncio.create_task(tick_loop())

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = getattr(app.state, "tick_task", None)
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        session.shutdown()

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/state")
    async def state() -> dict:
        payload = session.state_payload()
        payload["tick"] = world.tick
        payload["config"] = session.config_store.snapshot().model_dump()
        payload["runtime"] = {
            "last_tick_ms": round(float(getattr(app.state, "last_tick_ms", 0.0)), 3),
            "avg_tick_ms": round(float(getattr(app.state, "avg_tick_ms", 0.0)), 3),
        }
        return payload

    @app.get("/api/config")
    async def config() -> dict:
        snapshot = session.config_store.snapshot()
        return {**snapshot.model_dump(), "address": snapshot.address}

    @app.get("/api/world")
    async def world_state() -> dict:
        return world.state_payload()

    @app.get("/api/players/{player_id}/messages")
    async def player_messages(player_id: str) -> list[str]:
        player = world.find_player(player_id)
        if player is None:
            raise HTTPException(status_code=404, detail="player not found")
        return list(player.system_messages)

    @app.post("/api/chat")
    async def chat(payload: ChatMessageIn) -> dict:
        try:
            event, handling = world.handle_player_chat(payload.player_id, payload.chat_type, payload.text)
        except KeyError:
            raise HTTPException(status_code=404, detail="player not found") from None
        return {"delivered": True, "event": event, "handling": getattr(handling, "value", handling)}

    @app.post("/api/control/target")
    async def control_target(payload: ControlTargetIn) -> dict:
        try:
            player = world.select_target(payload.player_id, payload.target_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"unknown id: {exc.args[0]}") from None
        return {"player_id": player.guid, "target_id": player.target_guid}

    @app.post("/api/control/creature/add")
    async def control_creature_add(payload: ControlCreatureAddIn) -> dict:
        try:
            creature = world.add_creature(
                payload.name,
                guid=payload.id,
                location=LocationKey(map_id=payload.map_id, instance_id=payload.instance_id),
                pos=Vec3(payload.pos_x or 0.0, 0.0, payload.pos_z or 0.0),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        return {"accepted": True, "creature": creature.to_payload()}

    @app.post("/api/control/creature/remove")
    async def control_creature_remove(payload: ControlCreatureRemoveIn) -> dict:
        try:
            removed = world.remove_creature(payload.creature_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="creature not found") from None
        return {"accepted": True, "creature_id": removed.guid}

    return app


app = create_app()
