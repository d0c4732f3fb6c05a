"""
Models for the private network fabric of an orchestration unit.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel


class NetworkEntry(BaseModel):
    """
    One row of the name-resolution table.
    """
    container_id: str
    address: str
    aliases: List[str] = []


class NetworkHandle(BaseModel):
    """
    The fabric of one unit: a bridge-mode subnet and its resolution table.
    """
    unit: str
    name: str
    driver: str = "bridge"
    subnet: str
    gateway: str
    entries: Dict[str, NetworkEntry] = {}
    # Addresses stay with the service name across re-attach.
    leases: Dict[str, str] = {}

    def lookup(self, name: str) -> Optional[NetworkEntry]:
        """Finds an entry by service name or alias."""
        if name in self.entries:
            return self.entries[name]
        for entry in self.entries.values():
            if name in entry.aliases:
                return entry
        return None
