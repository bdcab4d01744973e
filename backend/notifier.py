import logging

from contacts import ContactsDirectory
from schemas import PresenceEvent


class ContactPresenceNotifier:
    """Tells a user's accepted contacts when that user comes online or leaves."""

    def __init__(self, directory: ContactsDirectory):
        self.directory = directory

    async def announce(self, registry, user_id: str, online: bool) -> int:
        try:
            contacts = await self.directory.get_accepted_contacts(user_id)
        except Exception as e:
            logging.error(f"Contacts lookup failed for {user_id}, presence not announced: {e}")
            return 0

        event = PresenceEvent.for_user(user_id, online).model_dump(by_alias=True)
        notified = 0
        for contact_id in contacts:
            if contact_id == user_id:
                continue
            # Only contacts that are reachable right now hear about it
            connection = registry.resolve(contact_id)
            if connection is not None and connection.deliver(event):
                notified += 1
        logging.info(f"Announced {event['type']} for {user_id} to {notified} contact(s)")
        return notified
