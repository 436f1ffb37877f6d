"""
RGB Round Trip Example for PyCLUtil.

Demonstrates typed image transfers: an RGB float image is uploaded,
overwritten asynchronously, read back through a dependent region read
and finally awaited from asyncio. Uses the emulated CPU device, since
many OpenCL devices do not list three-channel image formats.
"""

from __future__ import annotations

import asyncio

import numpy as np

from pyclutil import (
    ComputeContext,
    ContextConfig,
    MemFlag,
    PixelLayout,
    alloc_image,
    copy_buffer_to_image_async,
    flatten,
    init_buffer,
    init_image,
    read_image_async,
    read_image_region,
    read_image_region_async,
    write_image_async,
)


def run_rgb_example() -> None:
    """Run the blocking and non-blocking transfer example."""
    print("=" * 60)
    print("PyCLUtil RGB Round Trip Example")
    print("=" * 60)

    rgb = np.array(
        [[0.0, 0.1, 0.2], [1.0, 1.1, 1.2], [2.0, 2.1, 2.2], [3.0, 3.1, 3.2]],
        dtype=np.float32,
    )

    with ComputeContext(ContextConfig(backend="cpu")) as ctx:
        print(f"\n1. Context: {ctx!r}")

        img = init_image(ctx, MemFlag.READ_WRITE, (2, 2), rgb)
        print(f"   Created {img!r}")

        print("\n2. Blocking read of the whole image...")
        out = read_image_region(img, (0, 0, 0), (2, 2, 1))
        print(f"   Flat scalars: {flatten(out).tolist()}")

        print("\n3. Chained non-blocking write and read...")
        written = write_image_async(img, rgb * 10)
        pending = read_image_region_async(img, (1, 0), (1, 2), [written])
        print(f"   Read queued, token: {pending.token!r}")
        print(f"   Right column: {pending.wait().tolist()}")

        print("\n4. Staging through a buffer...")
        staged = init_buffer(ctx, MemFlag.READ_ONLY, rgb[::-1])
        target = alloc_image(ctx, MemFlag.READ_WRITE, (2, 2), PixelLayout(3, np.float32))
        copied = copy_buffer_to_image_async(staged, target)
        reversed_pixels = read_image_region_async(target, (0, 0), (2, 2), [copied]).wait()
        print(f"   First pixel after copy: {reversed_pixels[0].tolist()}")

        print("\n5. Transfer statistics...")
        for key, value in ctx.stats.to_dict().items():
            print(f"   {key}: {value}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


async def run_async_example() -> None:
    """Await deferred reads from an event loop."""
    pixels = np.arange(16, dtype=np.float32).reshape(4, 4)

    async with ComputeContext(ContextConfig(backend="cpu")) as ctx:
        img = init_image(ctx, MemFlag.READ_WRITE, (2, 2), pixels)
        result = await read_image_async(img)
        print(f"Awaited RGBA pixels:\n{result}")


if __name__ == "__main__":
    run_rgb_example()
    asyncio.run(run_async_example())
