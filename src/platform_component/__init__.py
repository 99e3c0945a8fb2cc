"""
Platform Component: client runtime for joining a managed NATS fabric.

Generates an nkey identity, registers it with the control plane for bus
credentials, connects, publishes heartbeats and can ship its logs to the bus.
"""
