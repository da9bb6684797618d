#!/usr/bin/env python3
"""Follow a project's canvas updates from the terminal.

    python -m apicanvas.watch <project_id> --user <user id>
"""
import argparse
import asyncio
import json

import websockets


def describe(message: dict) -> str:
    kind = message.get("type")
    payload = message.get("payload", {})
    if kind == "canvas-update":
        state = payload.get("state", {})
        return (
            f"Update from {payload.get('sessionId', '?')}: "
            f"{len(state.get('nodes', []))} nodes, {len(state.get('edges', []))} connections"
        )
    if kind == "joined":
        return f"Joined project {payload.get('projectId')} as session {payload.get('sessionId')}"
    return f"Received: {kind} - {payload}"


async def watch_project(url: str, project_id: str, user_id: str):
    uri = f"{url.rstrip('/')}/api/ws/projects/{project_id}?user_id={user_id}"
    print(f"Connecting to {uri}...")

    async with websockets.connect(uri) as websocket:
        while True:
            try:
                message = await websocket.recv()
            except websockets.exceptions.ConnectionClosed:
                print("WebSocket connection closed")
                break
            try:
                print(describe(json.loads(message)))
            except json.JSONDecodeError as e:
                print(f"Invalid JSON received: {message} - Error: {e}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Print live canvas updates for a project")
    parser.add_argument("project_id")
    parser.add_argument("--url", default="ws://localhost:8000")
    parser.add_argument("--user", required=True, help="owner id sent as the principal")
    args = parser.parse_args(argv)

    try:
        asyncio.run(watch_project(args.url, args.project_id, args.user))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
