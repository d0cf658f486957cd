"""MQTT connection management and topic conventions."""
