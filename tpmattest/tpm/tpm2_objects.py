import struct
from typing import Any, Dict, List, Optional, Tuple, Union

import cryptography.hazmat.primitives.asymmetric.ec as crypto_ec
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ec import (
    EllipticCurve,
    EllipticCurvePublicKey,
    EllipticCurvePublicNumbers,
)
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey, RSAPublicNumbers

from tpmattest.common.algorithms import Hash, Sign
from tpmattest.tpm.types import TpmsAttest, TpmsCertifyInfo, TpmsClockInfo, TpmsQuoteInfo

pubkey_type = Union[RSAPublicKey, EllipticCurvePublicKey]


def _pack_in_tpm2b(val: bytes) -> bytes:
    return struct.pack(">H", len(val)) + val


# Structure tags and magic
TPM_GENERATED_VALUE = 0xFF544347

TPM_ST_ATTEST_CERTIFY = 0x8017
TPM_ST_ATTEST_QUOTE = 0x8018

# Algorithm constants
TPM2_ALG_NULL = 0x0010

TPM_ECC_NIST_P192 = 0x0001
TPM_ECC_NIST_P224 = 0x0002
TPM_ECC_NIST_P256 = 0x0003
TPM_ECC_NIST_P384 = 0x0004
TPM_ECC_NIST_P521 = 0x0005

TPM_ALG_RSA = 0x0001
TPM_ALG_ECC = 0x0023

TPM_ALG_SHA1 = 0x0004
TPM_ALG_SHA256 = 0x000B
TPM_ALG_SHA384 = 0x000C
TPM_ALG_SHA512 = 0x000D

TPM_ALG_RSASSA = 0x0014
TPM_ALG_RSAPSS = 0x0016
TPM_ALG_ECDSA = 0x0018

TPM_ALG_AES = 0x0006
TPM_ALG_CFB = 0x0043

HASH_FUNCS: Dict[int, hashes.HashAlgorithm] = {
    TPM_ALG_SHA1: hashes.SHA1(),
    TPM_ALG_SHA256: hashes.SHA256(),
    TPM_ALG_SHA384: hashes.SHA384(),
    TPM_ALG_SHA512: hashes.SHA512(),
}

SIG_ALGS: Dict[Sign, int] = {
    Sign.RSASSA: TPM_ALG_RSASSA,
    Sign.RSAPSS: TPM_ALG_RSAPSS,
    Sign.ECDSA: TPM_ALG_ECDSA,
}


# These are the object attribute values
OA_FIXEDTPM = 0x00000002
OA_STCLEAR = 0x00000004
OA_FIXEDPARENT = 0x00000010
OA_SENSITIVEDATAORIGIN = 0x00000020
OA_USERWITHAUTH = 0x00000040
OA_ADMINWITHPOLICY = 0x00000080
OA_NODA = 0x00000400
OA_ENCRYPTEDDUPLICATION = 0x00000800
OA_RESTRICTED = 0x00010000
OA_DECRYPT = 0x00020000
OA_SIGN_ENCRYPT = 0x00040000


class PublicParameters:
    """The TPMT_SYM_DEF_OBJECT and scheme part of TPMU_PUBLIC_PARMS shared by RSA and ECC keys"""

    sym_algorithm: int
    sym_keybits: int
    sym_mode: int
    scheme: int
    scheme_hash: int

    def __init__(
        self,
        sym_algorithm: int = TPM2_ALG_NULL,
        sym_keybits: int = 0,
        sym_mode: int = TPM2_ALG_NULL,
        scheme: int = TPM2_ALG_NULL,
        scheme_hash: int = TPM2_ALG_NULL,
    ) -> None:
        self.sym_algorithm = sym_algorithm
        self.sym_keybits = sym_keybits
        self.sym_mode = sym_mode
        self.scheme = scheme
        self.scheme_hash = scheme_hash

    def to_bytes(self) -> bytes:
        sym = struct.pack(">H", self.sym_algorithm)
        if self.sym_algorithm != TPM2_ALG_NULL:
            sym += struct.pack(">HH", self.sym_keybits, self.sym_mode)
        scheme = struct.pack(">H", self.scheme)
        if self.scheme != TPM2_ALG_NULL:
            scheme += struct.pack(">H", self.scheme_hash)
        return sym + scheme


def hash_alg_from_name(name: Union[str, int]) -> Optional[int]:
    """
    Map a hash name ("SHA256", "sha-256") or TPM algorithm id to a supported TPM algorithm id.

    Returns None for anything without an implementation.
    """
    if isinstance(name, int):
        return name if name in HASH_FUNCS else None
    if not isinstance(name, str):
        return None
    if not Hash.is_recognized(name):
        return None
    hash_name = Hash.from_name(name).value
    for alg_id, hashfunc in HASH_FUNCS.items():
        if hashfunc.name == hash_name:
            return alg_id
    return None


def sig_alg_from_name(name: Union[str, int]) -> Optional[int]:
    if isinstance(name, int):
        return name if name in SIG_ALGS.values() else None
    if not isinstance(name, str):
        return None
    scheme = name.strip().lower().replace("-", "")
    if not Sign.is_recognized(scheme):
        return None
    return SIG_ALGS[Sign(scheme)]


def _curve_id_from_name(name: str) -> int:
    if name == "secp192r1":
        return TPM_ECC_NIST_P192
    if name == "secp224r1":
        return TPM_ECC_NIST_P224
    if name == "secp256r1":
        return TPM_ECC_NIST_P256
    if name == "secp384r1":
        return TPM_ECC_NIST_P384
    if name == "secp521r1":
        return TPM_ECC_NIST_P521

    raise ValueError(f"Invalid curve name {name} requested")


def _curve_from_curve_id(cid: int) -> EllipticCurve:
    if cid == TPM_ECC_NIST_P192:
        return crypto_ec.SECP192R1()
    if cid == TPM_ECC_NIST_P224:
        return crypto_ec.SECP224R1()
    if cid == TPM_ECC_NIST_P256:
        return crypto_ec.SECP256R1()
    if cid == TPM_ECC_NIST_P384:
        return crypto_ec.SECP384R1()
    if cid == TPM_ECC_NIST_P521:
        return crypto_ec.SECP521R1()

    raise ValueError(f"Invalid curve id {cid} requested")


def _extract_tpm2b(vals: bytes) -> Tuple[bytes, bytes]:
    if len(vals) < 2:
        raise ValueError("Truncated TPM2B: missing size field")
    (length,) = struct.unpack(">H", vals[0:2])
    # Ignore the length itself when returning
    vals = vals[2:]
    if len(vals) < length:
        raise ValueError(f"Truncated TPM2B: size is {length} but only {len(vals)} bytes are left")
    # Return first the currect buffer, and then the rest
    return (vals[:length], vals[length:])


def _unpack_fixed(fmt: str, vals: bytes) -> Tuple[Tuple[Any, ...], bytes]:
    size = struct.calcsize(fmt)
    if len(vals) < size:
        raise ValueError(f"Truncated structure: need {size} bytes but only {len(vals)} are left")
    return (struct.unpack(fmt, vals[:size]), vals[size:])


def unmarshal_tpms_attest(data: bytes) -> TpmsAttest:
    """
    Decode a marshalled TPMS_ATTEST.

    Only the certify and quote variants of the attested union are understood.
    The whole buffer must be consumed; ValueError is raised for truncated
    input, unknown attestation types and trailing bytes.
    """
    data = bytes(data)

    ((magic, attested_type), rest) = _unpack_fixed(">IH", data)
    (qualified_signer, rest) = _extract_tpm2b(rest)
    (extra_data, rest) = _extract_tpm2b(rest)
    ((clock, reset_count, restart_count, safe, firmware_version), rest) = _unpack_fixed(">QIIBQ", rest)

    attested: Union[TpmsCertifyInfo, TpmsQuoteInfo]
    if attested_type == TPM_ST_ATTEST_CERTIFY:
        (name, rest) = _extract_tpm2b(rest)
        (qualified_name, rest) = _extract_tpm2b(rest)
        attested = TpmsCertifyInfo(name=name, qualified_name=qualified_name)
    elif attested_type == TPM_ST_ATTEST_QUOTE:
        ((count,), rest) = _unpack_fixed(">I", rest)
        selections: List[Tuple[int, bytes]] = []
        for _ in range(count):
            ((hash_alg, size_of_select), rest) = _unpack_fixed(">HB", rest)
            if len(rest) < size_of_select:
                raise ValueError("Truncated TPMS_PCR_SELECTION")
            selections.append((hash_alg, rest[:size_of_select]))
            rest = rest[size_of_select:]
        (pcr_digest, rest) = _extract_tpm2b(rest)
        attested = TpmsQuoteInfo(pcr_select=tuple(selections), pcr_digest=pcr_digest)
    else:
        raise ValueError(f"Unsupported attestation type {attested_type:#x}")

    if len(rest) != 0:
        raise ValueError(f"{len(rest)} trailing bytes after TPMS_ATTEST")

    return TpmsAttest(
        magic=magic,
        attested_type=attested_type,
        qualified_signer=qualified_signer,
        extra_data=extra_data,
        clock_info=TpmsClockInfo(clock, reset_count, restart_count, safe),
        firmware_version=firmware_version,
        attested=attested,
    )


def tpms_attest_marshal(attest: TpmsAttest) -> bytes:
    """Inverse of unmarshal_tpms_attest"""
    clk = attest.clock_info
    body = (
        struct.pack(">IH", attest.magic, attest.attested_type)
        + _pack_in_tpm2b(attest.qualified_signer)
        + _pack_in_tpm2b(attest.extra_data)
        + struct.pack(">QIIBQ", clk.clock, clk.reset_count, clk.restart_count, clk.safe, attest.firmware_version)
    )
    if isinstance(attest.attested, TpmsCertifyInfo):
        return body + _pack_in_tpm2b(attest.attested.name) + _pack_in_tpm2b(attest.attested.qualified_name)

    body += struct.pack(">I", len(attest.attested.pcr_select))
    for hash_alg, select in attest.attested.pcr_select:
        body += struct.pack(">HB", hash_alg, len(select)) + select
    return body + _pack_in_tpm2b(attest.attested.pcr_digest)


def _skip_scheme(vals: bytes) -> bytes:
    ((scheme,), rest) = _unpack_fixed(">H", vals)
    if scheme != TPM2_ALG_NULL:
        # TPMS_SCHEME_HASH: only the hash algorithm follows
        (_, rest) = _unpack_fixed(">H", rest)
    return rest


def unmarshal_tpmt_public(public: bytes) -> Tuple[pubkey_type, int, int]:
    """
    Decode the public key of a TPMT_PUBLIC.

    Returns the key, the nameAlg and the objectAttributes.
    """
    ((alg_type, name_alg, attributes), rest) = _unpack_fixed(">HHI", public)
    # Ignore the authPolicy
    (_, rest) = _extract_tpm2b(rest)

    # TPMT_SYM_DEF_OBJECT: keyBits and mode are only present for a non-NULL algorithm
    ((sym_alg,), rest) = _unpack_fixed(">H", rest)
    if sym_alg != TPM2_ALG_NULL:
        (_, rest) = _unpack_fixed(">HH", rest)
    rest = _skip_scheme(rest)

    if alg_type == TPM_ALG_RSA:
        ((keybits, exponent), rest) = _unpack_fixed(">HI", rest)
        if exponent == 0:
            exponent = 65537
        (modulus, rest) = _extract_tpm2b(rest)
        if len(rest) != 0:
            raise ValueError("Misparsed: more contents after the RSA modulus")
        if (len(modulus) * 8) != keybits:
            raise ValueError(f"Misparsed either modulus or keybits: {len(modulus)}*8 != {keybits}")
        bmodulus = int.from_bytes(modulus, byteorder="big")

        rsa_numbers = RSAPublicNumbers(exponent, bmodulus)
        return (rsa_numbers.public_key(backend=default_backend()), name_alg, attributes)

    if alg_type == TPM_ALG_ECC:
        ((curve_id,), rest) = _unpack_fixed(">H", rest)
        rest = _skip_scheme(rest)  # kdf
        curve = _curve_from_curve_id(curve_id)

        (x, rest) = _extract_tpm2b(rest)
        (y, rest) = _extract_tpm2b(rest)
        if len(rest) != 0:
            raise ValueError("Misparsed: more contents after X and Y")

        max_bytes = (curve.key_size + 7) // 8
        if not 0 < len(x) <= max_bytes:
            raise ValueError(f"Misparsed either X or curve: {len(x)} bytes for {curve.name}")
        if not 0 < len(y) <= max_bytes:
            raise ValueError(f"Misparsed either Y or curve: {len(y)} bytes for {curve.name}")

        bx = int.from_bytes(x, byteorder="big")
        by = int.from_bytes(y, byteorder="big")

        ecc_numbers = EllipticCurvePublicNumbers(bx, by, curve)
        return (ecc_numbers.public_key(backend=default_backend()), name_alg, attributes)

    raise ValueError(f"Invalid tpmt_public type: {alg_type}")


def pubkey_from_tpm2b_public(public: bytes) -> pubkey_type:
    (tpmt_public, rest) = _extract_tpm2b(public)
    if len(rest) != 0:
        raise ValueError("More in tpm2b_public than tpmt_public")
    (pubkey, _, _) = unmarshal_tpmt_public(tpmt_public)
    return pubkey


def tpmt_public_from_pubkey(
    pubkey: pubkey_type,
    name_alg: int,
    attributes: int,
    auth_policy: bytes = b"",
    parms: Optional[PublicParameters] = None,
) -> bytes:
    """
    Returns a reconstructed TPMT_PUBLIC from a public key.
    """
    if parms is None:
        parms = PublicParameters()

    if isinstance(pubkey, RSAPublicKey):
        alg_type = TPM_ALG_RSA

        rsa_numbers = pubkey.public_numbers()
        n = rsa_numbers.n.to_bytes((pubkey.key_size + 7) // 8, byteorder="big")

        pub_e = rsa_numbers.e
        if pub_e == 65537:
            pub_e = 0

        algo_parms = struct.pack(">HI", pubkey.key_size, pub_e)
        unique = _pack_in_tpm2b(n)
    elif isinstance(pubkey, EllipticCurvePublicKey):
        alg_type = TPM_ALG_ECC

        ecc_numbers = pubkey.public_numbers()
        coord_size = (pubkey.curve.key_size + 7) // 8

        algo_parms = struct.pack(
            ">HH",
            _curve_id_from_name(ecc_numbers.curve.name),
            TPM2_ALG_NULL,
        )
        unique_x = ecc_numbers.x.to_bytes(coord_size, byteorder="big")
        unique_y = ecc_numbers.y.to_bytes(coord_size, byteorder="big")
        unique = _pack_in_tpm2b(unique_x) + _pack_in_tpm2b(unique_y)
    else:
        raise ValueError("Unsupported public key type")

    return (
        struct.pack(
            ">HHI",
            alg_type,
            name_alg,
            attributes,
        )
        + _pack_in_tpm2b(auth_policy)
        + parms.to_bytes()
        + algo_parms
        + unique
    )


def tpm2b_public_from_pubkey(
    pubkey: pubkey_type,
    name_alg: int,
    attributes: int,
    auth_policy: bytes = b"",
    parms: Optional[PublicParameters] = None,
) -> bytes:
    return _pack_in_tpm2b(tpmt_public_from_pubkey(pubkey, name_alg, attributes, auth_policy, parms))


def compute_object_name(data: bytes, name_alg: int) -> bytes:
    """
    Return the TPM name of an object: nameAlg || H(data)

    The nameAlg is given by the caller, not read from the object, so that a
    name can be recomputed under the algorithm another structure claims.
    """
    hashfunc = HASH_FUNCS.get(name_alg)
    if not hashfunc:
        raise ValueError(f"Unsupported nameAlg {name_alg:#x} used")

    digest = hashes.Hash(hashfunc, backend=default_backend())
    digest.update(data)
    return struct.pack(">H", name_alg) + digest.finalize()


def get_name_alg(name: bytes) -> int:
    if len(name) < 2:
        raise ValueError("Name too short to carry an algorithm id")
    (name_alg,) = struct.unpack(">H", name[0:2])
    return int(name_alg)


def get_tpmt_public_name(public: bytes) -> bytes:
    """
    Return the TPM name of an object provided as TPMT_PUBLIC.

    The name is equal to: nameAlg || H(T_Public)
    where
        H is the hash function identified by nameAlg
        T_Public is the TPMT_PUBLIC part of the object
    """
    # The first two bytes are type, next two are nameAlg
    ((_, name_alg), _) = _unpack_fixed(">HH", public)
    return compute_object_name(public, name_alg)


def get_tpmt_public_object_attributes(public: bytes) -> int:
    # Ignore type and namealg and get attributes
    ((_, _, attrs), _) = _unpack_fixed(">HHI", public)
    return int(attrs)


def object_attributes_description(oas: int) -> str:
    attrs = []
    if (oas & OA_FIXEDTPM) != 0:
        attrs.append("fixed-tpm")
    if (oas & OA_STCLEAR) != 0:
        attrs.append("st-clear")
    if (oas & OA_FIXEDPARENT) != 0:
        attrs.append("fixed-parent")
    if (oas & OA_SENSITIVEDATAORIGIN) != 0:
        attrs.append("sensitive-data-origin")
    if (oas & OA_USERWITHAUTH) != 0:
        attrs.append("user-with-auth")
    if (oas & OA_ADMINWITHPOLICY) != 0:
        attrs.append("admin-with-policy")
    if (oas & OA_NODA) != 0:
        attrs.append("no-da")
    if (oas & OA_ENCRYPTEDDUPLICATION) != 0:
        attrs.append("encrypted-duplication")
    if (oas & OA_RESTRICTED) != 0:
        attrs.append("restricted")
    if (oas & OA_DECRYPT) != 0:
        attrs.append("decrypt")
    if (oas & OA_SIGN_ENCRYPT) != 0:
        attrs.append("sign-encrypt")

    return " | ".join(attrs)
