import hashlib
import struct
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding

from tpmattest.tpm import tpm2_objects
from tpmattest.tpm.types import TpmsAttest, TpmsCertifyInfo, TpmsClockInfo, TpmsQuoteInfo

QUALIFYING_DATA = hashlib.sha256(b"qualifying-data").digest()

# Attributes of a key created by 'tpm2_create -G rsa' below an SRK
OBJECT_ATTRS = (
    tpm2_objects.OA_FIXEDTPM
    | tpm2_objects.OA_FIXEDPARENT
    | tpm2_objects.OA_SENSITIVEDATAORIGIN
    | tpm2_objects.OA_USERWITHAUTH
    | tpm2_objects.OA_SIGN_ENCRYPT
)


def make_attested_object(name_alg: int = tpm2_objects.TPM_ALG_SHA1, key: Optional[ec.EllipticCurvePrivateKey] = None) -> bytes:
    if key is None:
        key = ec.generate_private_key(ec.SECP256R1())
    return tpm2_objects.tpmt_public_from_pubkey(key.public_key(), name_alg, OBJECT_ATTRS)


def make_name(data: bytes, name_alg: int = tpm2_objects.TPM_ALG_SHA1, hash_name: str = "sha1") -> bytes:
    """The name as a TPM computes it; name_alg and hash_name can disagree on purpose"""
    return struct.pack(">H", name_alg) + hashlib.new(hash_name, data).digest()


def make_certify_info(
    extra_data: bytes,
    name: bytes,
    magic: int = tpm2_objects.TPM_GENERATED_VALUE,
    qualified_signer: bytes = b"",
) -> bytes:
    attest = TpmsAttest(
        magic=magic,
        attested_type=tpm2_objects.TPM_ST_ATTEST_CERTIFY,
        qualified_signer=qualified_signer,
        extra_data=extra_data,
        clock_info=TpmsClockInfo(clock=1234, reset_count=1, restart_count=0, safe=1),
        firmware_version=0x2000000000000,
        attested=TpmsCertifyInfo(name=name, qualified_name=b""),
    )
    return tpm2_objects.tpms_attest_marshal(attest)


def make_quote_info(extra_data: bytes) -> bytes:
    attest = TpmsAttest(
        magic=tpm2_objects.TPM_GENERATED_VALUE,
        attested_type=tpm2_objects.TPM_ST_ATTEST_QUOTE,
        qualified_signer=b"",
        extra_data=extra_data,
        clock_info=TpmsClockInfo(clock=0, reset_count=0, restart_count=0, safe=1),
        firmware_version=0,
        attested=TpmsQuoteInfo(
            pcr_select=((tpm2_objects.TPM_ALG_SHA256, b"\x01\x00\x00"),),
            pcr_digest=hashlib.sha256(b"pcrs").digest(),
        ),
    )
    return tpm2_objects.tpms_attest_marshal(attest)


def rsa_sign(key, data: bytes, hashfunc: Optional[hashes.HashAlgorithm] = None) -> bytes:
    return key.sign(data, padding.PKCS1v15(), hashfunc or hashes.SHA256())
