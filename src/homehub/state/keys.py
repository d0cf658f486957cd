"""Keys under which application state lives in the KV store."""

DEVICES = "devices"
ROOMS = "rooms"
SCENES = "scenes"
ACTIVE_SCENE = "active-scene"

ALL_KEYS = (DEVICES, ROOMS, SCENES, ACTIVE_SCENE)
