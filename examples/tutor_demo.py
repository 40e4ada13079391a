"""Minimal demonstration of the tutor orchestrator."""

import asyncio

from tutor_core.api.service import ask, shutdown_default_orchestrator


async def main() -> None:
    for question in ("What is a neural network?", "draw me a diagram of photosynthesis"):
        reply = await ask(question)
        print("User:", question)
        print("Tutor:", reply["response"])
    await shutdown_default_orchestrator()


if __name__ == "__main__":
    asyncio.run(main())
