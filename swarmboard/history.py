# swarmboard/history.py - Download history kept in DATA_PATH/history.json
import json
import logging
import os
import time

log = logging.getLogger(__name__)


class JsonHistory:
    """
    Minimal history sink: who added what, where, and whether it was removed.
    Anything with the same two methods can stand in for it.
    """

    def __init__(self, path):
        self.path = path

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.warning(f"Could not read history file {self.path}: {e}")
            return {}

    def save(self, data) -> None:
        with open(self.path, "w") as f:
            json.dump(data, f, indent=4)

    def add_download(self, hash_val, name=None, size=None, username=None, client_type=None,
                     category=None, instance_id=None) -> None:
        data = self.load()
        data[hash_val.lower()] = {
            "name": name,
            "size": size,
            "username": username,
            "clientType": client_type,
            "category": category,
            "instanceId": instance_id,
            "addedAt": time.time(),
            "status": "active",
        }
        self.save(data)

    def mark_deleted(self, hash_val, instance_id=None) -> None:
        data = self.load()
        entry = data.get(hash_val.lower())
        if entry is None:
            return
        entry["status"] = "deleted"
        entry["deletedAt"] = time.time()
        self.save(data)
