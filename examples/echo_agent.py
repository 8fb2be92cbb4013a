"""
examples/echo_agent.py - Minimal agent process for ClawChat

The echo agent:
1. Serves POST /events, the endpoint ClawChat notifies on every user action
2. On a user message, reports `inference`, waits a moment, then replies
   "Echo: <text>" through the agent API
3. Answers /info/health, /info/state and /stop so the chat UI shows it as live

Usage:
    python -m examples.echo_agent --port 3200 --chat http://127.0.0.1:3100

Run this AFTER starting the chat:
    clawchat serve
"""
import argparse
import asyncio
import logging

import httpx
import uvicorn
from fastapi import FastAPI, Request

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("echo_agent")


def create_echo_agent(chat_url: str, delay: float = 1.0) -> FastAPI:
    app = FastAPI(title="Echo Agent")
    state = {"current": "idle", "turn": None}

    async def reply(conversation_id: str, text: str) -> None:
        async with httpx.AsyncClient(base_url=chat_url, timeout=10) as client:
            try:
                await client.post("/state", json={"state": "inference"})
                state["current"] = "inference"
                await asyncio.sleep(delay)
                await client.post("/send", json={"conversationId": conversation_id, "content": f"Echo: {text}"})
            except httpx.HTTPError as e:
                logger.warning(f"Reply failed: {e}")
            finally:
                state["current"] = "idle"

    @app.post("/events")
    async def events(request: Request):
        event = await request.json()
        logger.info(f"← {event.get('type')}: {event.get('payload')}")
        if event.get("type") == "user_message":
            payload = event.get("payload") or {}
            state["turn"] = asyncio.create_task(reply(payload.get("conversationId", "default"), payload.get("content", "")))
        elif event.get("type") == "widget_action":
            return {"ok": True, "result": {"echo": event.get("payload")}}
        return {"ok": True}

    @app.get("/info/health")
    async def health():
        return {"status": "ok"}

    @app.get("/info/state")
    async def info_state():
        return {"state": state["current"]}

    @app.post("/stop")
    async def stop():
        turn = state["turn"]
        if turn is not None and not turn.done():
            turn.cancel()
        state["current"] = "idle"
        return {"ok": True}

    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Echo agent for ClawChat")
    parser.add_argument("--port", type=int, default=3200)
    parser.add_argument("--chat", default="http://127.0.0.1:3100", help="ClawChat agent API base URL")
    parser.add_argument("--delay", type=float, default=1.0)
    args = parser.parse_args()
    uvicorn.run(create_echo_agent(args.chat, args.delay), host="127.0.0.1", port=args.port)


if __name__ == "__main__":
    main()
