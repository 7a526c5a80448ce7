"""
Request/response schemas and the in-process records passed between components.

HTTP bodies accept the camelCase keys the web client sends as well as
snake_case.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


ByteInput = Union[str, List[int]]


class UserContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    address: str = Field(..., description="Claimer EVM address")
    answer: Optional[str] = Field(None, description="Free-text answer for trivia/creative rules")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    discord_id: Optional[str] = Field(None, alias="discordId")
    browser_info: Optional[Any] = Field(None, alias="browserInfo")

    @field_validator("discord_id", mode="before")
    @classmethod
    def _discord_id_as_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rule: str = Field(..., min_length=1, description="Natural-language eligibility rule")
    user_data: UserContext
    drop_id: Optional[Union[int, str]] = Field(None, alias="dropId")


class VerifyResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    approved: bool
    explanation: str
    proof_token: Optional[str] = Field(None, alias="proofToken")


class BiometricData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    signature: ByteInput = Field(..., description="DER or 64-byte compact P-256 signature")
    authenticator_data: Optional[ByteInput] = Field(None, alias="authenticatorData")
    client_data_json: Optional[ByteInput] = Field(None, alias="clientDataJSON")
    challenge: Optional[str] = None
    credential_id: Optional[str] = Field(None, alias="id")


class ClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    drop_id: int = Field(..., alias="dropId", ge=0)
    receiver: str
    biometric_data: Optional[BiometricData] = Field(None, alias="biometricData")
    proof_token: Optional[str] = Field(None, alias="proofToken")

    @field_validator("drop_id", mode="before")
    @classmethod
    def _parse_drop_id(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return int(v, 16) if v.lower().startswith("0x") else int(v)
        return v


class RulePreviewRequest(BaseModel):
    rule: str = Field(..., min_length=1)
    type: Optional[str] = Field(None, description="Quest type hint from the share link (geo, wallet)")


@dataclass
class ToolCallRecord:
    tool_name: str
    args: Dict[str, Any]
    result: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"tool": self.tool_name, "args": self.args, "result": self.result}


@dataclass
class VerificationDecision:
    approved: bool
    explanation: str
    proof_token: Optional[str] = None
    strategy: str = ""

    def to_response(self) -> VerifyResponse:
        # proofToken is only ever exposed next to an approval
        token = self.proof_token if self.approved else None
        return VerifyResponse(approved=self.approved, explanation=self.explanation, proofToken=token)


@dataclass
class DropRecord:
    sender: str
    amount: int
    active: bool
    expires_at: int
    gatekeeper_address: str
    signer_pub_key_x: bytes = b""
    signer_pub_key_y: bytes = b""

    @property
    def exists(self) -> bool:
        return int(self.sender, 16) != 0


@dataclass
class ClaimStatus:
    active: bool
    claimed: bool
    reclaimed: bool
    claimed_by: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["claimedBy"] = out.pop("claimed_by")
        return out
