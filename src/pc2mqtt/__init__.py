"""
pc2mqtt: bridge local host state (sensors, scripts) to an MQTT broker.

Owns the broker connection, reconnects on loss, serializes outbound traffic
through one ordered delivery queue, and routes inbound messages to handlers
by topic.
"""
