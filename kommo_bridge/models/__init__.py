from kommo_bridge.models.kv_entry import KVEntry

__all__ = ["KVEntry"]
