"""Basic usage example for the Hippo memory service."""

import asyncio
import time

from hippo import HippoConfig, MemoryService, MessageEvent


async def main():
    """Feed a short conversation through the service and recall from it."""
    # Configuration can be set via environment variables:
    # HIPPO_POSTGRES_HOST, HIPPO_CADENCE__MSG_THRESHOLD, etc.
    config = HippoConfig()

    service = MemoryService(config)
    await service.initialize()

    try:
        user_id = "demo-user"
        thread_id = "demo-thread"

        turns = [
            ("user", "Hi there"),
            ("assistant", "Hello! How can I help?"),
            ("user", "I always prefer dark mode in every editor I use."),
            ("assistant", "Noted, dark mode it is."),
            ("user", "My email is demo@example.com if you need it."),
            ("assistant", "Thanks, got it."),
        ]

        print("Ingesting messages...")
        for i, (role, content) in enumerate(turns):
            triggered = service.ingest_message(
                MessageEvent(
                    user_id=user_id,
                    thread_id=thread_id,
                    msg_id=f"m{i}",
                    role=role,
                    content=content,
                    input_tokens=len(content) // 4,
                    timestamp=time.time(),
                )
            )
            if triggered:
                print(f"  audit enqueued after message {i}")

        # Give the background worker a moment
        await asyncio.sleep(0.5)

        print("\nRecalling...")
        result = await service.recall(user_id, thread_id=thread_id, deadline_ms=100)
        for memory in result.memories:
            print(f"  [{memory.tier.value}] {memory.priority:.2f}  {memory.content}")
        print(f"  {result.count} memories in {result.elapsed_ms:.1f}ms (timed out: {result.timed_out})")

        print("\nMetrics:")
        print(f"  {service.get_metrics()}")

    finally:
        await service.close()


if __name__ == "__main__":
    asyncio.run(main())
