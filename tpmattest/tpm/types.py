from dataclasses import dataclass
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class TpmsClockInfo:
    clock: int
    reset_count: int
    restart_count: int
    safe: int


@dataclass(frozen=True)
class TpmsCertifyInfo:
    name: bytes
    qualified_name: bytes


@dataclass(frozen=True)
class TpmsQuoteInfo:
    # (hash algorithm, PCR select bitmap) per bank
    pcr_select: Tuple[Tuple[int, bytes], ...]
    pcr_digest: bytes


@dataclass(frozen=True)
class TpmsAttest:
    """Decoded TPMS_ATTEST; every variable-length field is an owned copy of the wire bytes"""

    magic: int
    attested_type: int
    qualified_signer: bytes
    extra_data: bytes
    clock_info: TpmsClockInfo
    firmware_version: int
    attested: Union[TpmsCertifyInfo, TpmsQuoteInfo]

    @property
    def attested_name(self) -> Optional[bytes]:
        if isinstance(self.attested, TpmsCertifyInfo):
            return self.attested.name
        return None
