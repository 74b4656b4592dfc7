"""
Chrome Stream
=============

Visual-delta frame pipeline and hybrid frame/action synchronization for
agents driving a live browser surface.

This package sits between a screencast source and an agent:
it decides which captured frames are worth forwarding, and correlates
each action the agent issues with the frame that settled after it,
without ever blocking the agent indefinitely.

Components:
    - stream: Frame model, image decoding, delta detection, sampling,
      and a websocket screencast consumer
    - sync: Bounded frame buffer, action correlation, and the
      StreamSynchronizer facade
    - models: Action vocabulary and result types

Example:
    from chrome_stream.sync import StreamSynchronizer

    async with StreamSynchronizer(executor=input_executor) as sync:
        await sync.add_frame(raw_frame)
        result = await sync.register_action(action)
        print(result.after_frame, result.caused_change)
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
