from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat import backends
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePublicKey
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from tpmattest import tpmattest_logging
from tpmattest.tpm import tpm2_objects
from tpmattest.tpm.errors import IncorrectSignature, UnsupportedAlgorithm

logger = tpmattest_logging.init_logging("tpm_util")

SupportedKeyTypes = Union[RSAPublicKey, EllipticCurvePublicKey]


def verify(
    pubkey: SupportedKeyTypes,
    sig: bytes,
    digest: bytes,
    hashfunc: hashes.HashAlgorithm,
    sigalg: int = tpm2_objects.TPM_ALG_RSASSA,
    saltlen: int = 0,
) -> None:
    """Do signature verification with the given public key"""
    if isinstance(pubkey, RSAPublicKey):
        if sigalg == tpm2_objects.TPM_ALG_RSAPSS:
            pubkey.verify(
                sig, digest, padding.PSS(mgf=padding.MGF1(hashfunc), salt_length=saltlen), Prehashed(hashfunc)
            )
        elif sigalg == tpm2_objects.TPM_ALG_RSASSA:
            pubkey.verify(sig, digest, padding.PKCS1v15(), Prehashed(hashfunc))
        else:
            raise ValueError(f"Unsupported signature scheme {sigalg:#x} for RSA keys")
    elif isinstance(pubkey, EllipticCurvePublicKey):
        pubkey.verify(sig, digest, ec.ECDSA(Prehashed(hashfunc)))
    else:
        raise ValueError(f"Unsupported key type {type(pubkey).__name__}")


def crypt_hash(data: bytes, hash_alg: int) -> Tuple[bytes, hashes.HashAlgorithm]:
    """TPM_Hash implementation

    Parameters
    ----------
    data: data to be hashed
    hash_alg: TPM id of the hashing algorithm to be used
    """
    hashfunc = tpm2_objects.HASH_FUNCS.get(hash_alg)
    if not hashfunc:
        raise ValueError(f"Unsupported hash with id {hash_alg:#x}")
    digest = hashes.Hash(hashfunc, backend=backends.default_backend())
    digest.update(data)

    return digest.finalize(), hashfunc


def ecdsa_der_from_tpm(sigblob: bytes) -> bytes:
    """Convert the r and s TPM2B buffers of a TPMS_SIGNATURE_ECDSA into a DER encoded signature"""
    (sig_r, rest) = tpm2_objects._extract_tpm2b(sigblob)
    (sig_s, rest) = tpm2_objects._extract_tpm2b(rest)
    if len(rest) != 0:
        raise ValueError("Misparsed: more contents after ECDSA signature")
    return encode_dss_signature(int.from_bytes(sig_r, "big"), int.from_bytes(sig_s, "big"))


def unmarshal_tpmt_signature(sigblob: bytes) -> Tuple[int, int, bytes]:
    """Decode a TPMT_SIGNATURE as written by 'tpm2_certify -f tss'

    Returns the signature algorithm, the hash algorithm and the signature in
    the encoding expected by verify(): PKCS#1/PSS bytes for RSA and DER for
    ECDSA.
    """
    ((sig_alg, hash_alg), rest) = tpm2_objects._unpack_fixed(">HH", sigblob)

    if sig_alg in [tpm2_objects.TPM_ALG_RSASSA, tpm2_objects.TPM_ALG_RSAPSS]:
        (signature, rest) = tpm2_objects._extract_tpm2b(rest)
        if len(rest) != 0:
            raise ValueError("Misparsed: more contents after RSA signature")
        return sig_alg, hash_alg, signature

    if sig_alg == tpm2_objects.TPM_ALG_ECDSA:
        return sig_alg, hash_alg, ecdsa_der_from_tpm(rest)

    raise ValueError(f"Unsupported signature algorithm {sig_alg:#x} in signature blob")


def check_signature(
    pubkey: SupportedKeyTypes,
    sig: bytes,
    data: bytes,
    hash_alg: int,
    sig_alg: Optional[int] = None,
) -> None:
    """Check a signature over the raw data

    Any reason for the signature not to verify, including a signature that
    is not even well-formed for the key type, raises IncorrectSignature.
    Keys, hashes and schemes without an implementation raise
    UnsupportedAlgorithm.
    """
    if not isinstance(pubkey, (RSAPublicKey, EllipticCurvePublicKey)):
        raise UnsupportedAlgorithm(f"Unsupported key type {type(pubkey).__name__}")

    if sig_alg is None:
        sig_alg = tpm2_objects.TPM_ALG_RSASSA if isinstance(pubkey, RSAPublicKey) else tpm2_objects.TPM_ALG_ECDSA

    if isinstance(pubkey, RSAPublicKey) and sig_alg not in [tpm2_objects.TPM_ALG_RSASSA, tpm2_objects.TPM_ALG_RSAPSS]:
        raise UnsupportedAlgorithm(f"Unsupported signature algorithm '{sig_alg:#x}' for RSA keys")
    if isinstance(pubkey, EllipticCurvePublicKey) and sig_alg not in [tpm2_objects.TPM_ALG_ECDSA]:
        raise UnsupportedAlgorithm(f"Unsupported signature algorithm '{sig_alg:#x}' for EC keys")

    if hash_alg not in tpm2_objects.HASH_FUNCS:
        raise UnsupportedAlgorithm(f"Unsupported hash with id {hash_alg:#x}")

    digest, hashfunc = crypt_hash(data, hash_alg)

    try:
        verify(pubkey, sig, digest, hashfunc, sig_alg, hashfunc.digest_size)
    except InvalidSignature as e:
        raise IncorrectSignature("signature does not verify") from e
    except ValueError as e:
        # Raised for signature encodings the key cannot even interpret
        logger.debug("Malformed signature: %s", e)
        raise IncorrectSignature("signature is malformed") from e
