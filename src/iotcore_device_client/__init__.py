"""
IoT Core device client: authenticated MQTT connection for constrained devices.

Loads a device private key, signs short-lived JWTs as connection passwords,
keeps one MQTT connection open (reconnecting on unexpected closes), publishes
on a schedule and dispatches inbound messages to handlers.
"""
