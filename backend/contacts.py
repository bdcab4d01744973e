import json
import os
import logging
from collections import defaultdict
from typing import Dict, Protocol, Set


class ContactsDirectory(Protocol):
    async def get_accepted_contacts(self, user_id: str) -> Set[str]:
        ...


class JsonContactsDirectory:
    """Accepted contacts read from a JSON file of contact rows.

    Each row is ``{"user_id", "contact_id", "status"}``; only rows with status
    ``accepted`` count, and they count in both directions.
    """

    def __init__(self, path: str):
        self.path = path
        self._contacts: Dict[str, Set[str]] = defaultdict(set)
        self._load_contacts()

    def _load_contacts(self):
        if not os.path.exists(self.path):
            logging.info(f"No contacts file at {self.path}, starting with an empty directory.")
            return
        try:
            with open(self.path, "r") as f:
                rows = json.load(f)
            for row in rows:
                if row.get("status") != "accepted":
                    continue
                user_id, contact_id = str(row["user_id"]), str(row["contact_id"])
                self._contacts[user_id].add(contact_id)
                self._contacts[contact_id].add(user_id)
        except (OSError, ValueError, KeyError, AttributeError) as e:
            logging.error(f"Error loading contacts file: {e}")
            self._contacts.clear()
            return
        logging.info(f"Loaded accepted contacts for {len(self._contacts)} users from disk.")

    async def get_accepted_contacts(self, user_id: str) -> Set[str]:
        return set(self._contacts.get(user_id, ()))
