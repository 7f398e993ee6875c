"""Feed relay — WebSocket publish/subscribe for live price feeds.

Clients connect, subscribe to integer feed ids and receive a push every
time a feed's value changes. The core is the subscription registry and
fan-out dispatcher in feedrelay.realtime.fanout.
"""

__version__ = "0.1.0"
