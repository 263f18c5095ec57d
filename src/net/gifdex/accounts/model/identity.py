"""Identity resolution models.

DID documents as returned by the PLC directory or a did:web host, and the
ResolvedActor produced for each authorization attempt.
"""

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"
PDS_SERVICE_FRAGMENT = "#atproto_pds"
INVALID_HANDLE = "handle.invalid"


class DidService(BaseModel):
    """Service entry of a DID document."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    type: Union[str, List[str]]
    service_endpoint: Any = Field(alias="serviceEndpoint")

    def is_pds(self) -> bool:
        """Check if the entry is the account's AT Protocol PDS."""
        types = self.type if isinstance(self.type, list) else [self.type]
        return (
            PDS_SERVICE_TYPE in types
            and self.id.endswith(PDS_SERVICE_FRAGMENT)
            and isinstance(self.service_endpoint, str)
        )


class DidDocument(BaseModel):
    """
    DID document.

    Only the fields needed to locate the PDS and the claimed handle are modelled;
    everything else is kept as extra data.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    also_known_as: List[str] = Field(default_factory=list, alias="alsoKnownAs")
    service: List[DidService] = Field(default_factory=list)

    def handle(self) -> Optional[str]:
        """Return the first at:// alias without its prefix, lowercased."""
        for alias in self.also_known_as:
            if alias.startswith("at://"):
                return alias.removeprefix("at://").lower()
        return None

    def pds_endpoint(self) -> Optional[str]:
        """Return the PDS service endpoint, if declared."""
        for service in self.service:
            if service.is_pds():
                return service.service_endpoint
        return None


class ResolvedActor(BaseModel):
    """Resolved AT Protocol actor with DID, handle and PDS endpoint."""

    did: str
    handle: str
    pds: str
