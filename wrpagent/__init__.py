"""WRP messages, publish/subscribe routing and a self-maintaining websocket client."""

__version__ = "0.1.0"