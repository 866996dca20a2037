"""Example of a chat gateway reporting messages to Hippo."""

import asyncio
import time

import httpx

from hippo.config import EmitterConfig
from hippo.emitter import MemoryEventEmitter
from hippo.models import MessageEvent


class ChatGateway:
    """Minimal gateway: answers a message, reports both sides, never waits on memory."""

    def __init__(self, memory_url: str = "http://localhost:8081"):
        self.emitter = MemoryEventEmitter(EmitterConfig(base_url=memory_url))
        self.memory_url = memory_url

    async def close(self):
        await self.emitter.close()

    async def handle_message(self, user_id: str, thread_id: str, text: str) -> str:
        memories = await self._recall(user_id, thread_id)
        reply = f"(answer using {len(memories)} memories)"

        now = time.time()
        self.emitter.emit(MessageEvent(user_id, thread_id, f"u-{now}", "user", text, input_tokens=len(text) // 4, timestamp=now))
        self.emitter.emit(MessageEvent(user_id, thread_id, f"a-{now}", "assistant", reply, output_tokens=len(reply) // 4, timestamp=now))
        return reply

    async def _recall(self, user_id: str, thread_id: str) -> list[dict]:
        # Recall is optional context: any failure means "no memories"
        try:
            async with httpx.AsyncClient(base_url=self.memory_url, timeout=httpx.Timeout(0.1)) as client:
                response = await client.get("/recall", params={"userId": user_id, "threadId": thread_id})
                response.raise_for_status()
                return response.json()["memories"]
        except httpx.HTTPError:
            return []


async def main():
    gateway = ChatGateway()
    try:
        for text in ["Hello", "I always prefer concise answers.", "What's the weather like?"]:
            print(await gateway.handle_message("demo-user", "demo-thread", text))
    finally:
        await gateway.close()


if __name__ == "__main__":
    asyncio.run(main())
