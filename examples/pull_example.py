"""Example usage of the async image puller."""

import asyncio
import logging

from registry_image_puller import (
    HashVerification,
    ProgressReporter,
    ProgressStore,
    RegistryError,
    pull_image,
)
from registry_image_puller.logs import configure_logging

logger = logging.getLogger(__name__)


async def main():
    """Pull alpine for two architectures while polling progress."""
    configure_logging("download.log")
    store = ProgressStore()

    for architecture in ("amd64", "arm64"):
        reporter = ProgressReporter(store, architecture)
        task = asyncio.create_task(
            pull_image("alpine", architecture=architecture, progress=reporter)
        )

        while not task.done():
            state = store.get(architecture)
            if state["active"]:
                print(f"[{architecture}] {state['percent']:3d}% {state['message']}")
            await asyncio.sleep(0.5)

        try:
            result = task.result()
        except RegistryError as e:
            logger.error("Pull failed: %s", e)
            continue

        mismatched = [
            layer for layer in result.layers if layer.verification is HashVerification.MISMATCHED
        ]
        print(f"Saved {result.output_path} ({result.size} bytes)")
        if mismatched:
            print(f"  {len(mismatched)} layer(s) did not match their diffID")
        print(f"  load with: docker load -i {result.output_path}")


if __name__ == "__main__":
    asyncio.run(main())
