"""HomeHub: unified control of HTTP, MQTT and Hue devices."""

__version__ = "0.1.0"
