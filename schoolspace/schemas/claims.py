"""
Credential Claim Sets

Credentials issued before schools carried their own namespaces lack the
newer claims. Both shapes are modelled as one tagged union keyed on the
`ver` claim, so the resolver consumes a single type instead of probing
for optional fields.

- v1 (legacy): sub, role, optional school_id
- v2: ver=2, sub, role, optional school_id, school_code, schema_name
"""
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class LegacyClaims(BaseModel):
    """Claims carried by credentials issued before v2."""

    model_config = ConfigDict(extra="ignore")

    ver: Literal[1] = 1
    sub: int
    role: str = "teacher"
    school_id: Optional[int] = None

    @property
    def schema_name(self) -> Optional[str]:
        return None

    @property
    def school_code(self) -> Optional[str]:
        return None


class SchoolClaims(BaseModel):
    """Claims carried by current credentials."""

    model_config = ConfigDict(extra="ignore")

    ver: Literal[2]
    sub: int
    role: str = "teacher"
    school_id: Optional[int] = None
    school_code: Optional[str] = None
    # Untrusted until validated, like any other namespace identifier
    schema_name: Optional[str] = None


CredentialClaims = Annotated[Union[LegacyClaims, SchoolClaims], Field(discriminator="ver")]

_claims_adapter = TypeAdapter(CredentialClaims)


def parse_claims(payload: Dict[str, Any]) -> Union[LegacyClaims, SchoolClaims]:
    """
    Build the claim set for a decoded credential payload.

    Payloads without `ver` are v1. Older v1 credentials used `userId` and
    `schoolId`; those names are accepted as well.
    """
    data = dict(payload)
    data.setdefault("ver", 1)
    if "sub" not in data and "userId" in data:
        data["sub"] = data["userId"]
    if "school_id" not in data and "schoolId" in data:
        data["school_id"] = data["schoolId"]
    return _claims_adapter.validate_python(data)
