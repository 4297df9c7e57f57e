"""
Realtime app: propagation of committed ride, bid and task changes.

Key Components:
    - events.py: ChangeEvent and last-write-wins snapshot merging
    - filters.py: subscription filters and their channel layer groups
    - propagation.py: commit-time publishing of ChangeEvents
    - consumers/: the change feed WebSocket consumer
    - middleware.py: JWT / session authentication for WebSockets
    - live_feed.py: client side of the feed with reconnect and liveness checks

Usage:
    from realtime.propagation import publish_change
    from realtime.live_feed import LiveFeed, ChannelLayerTransport
"""
