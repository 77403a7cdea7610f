"""Verification of TPM 2.0 key attestations (TPM2_Certify results).

A key attestation is a TPMS_ATTEST of type TPM_ST_ATTEST_CERTIFY, signed by
an attestation key, stating that the object with a given name is loaded in
the TPM. The caller supplies the expected qualifying data and the object the
attestation is about; the name of that object is recomputed here and never
taken from anywhere else.
"""

import hmac
from dataclasses import dataclass
from typing import List, Optional, Union

from tpmattest import tpmattest_logging
from tpmattest.common import algorithms
from tpmattest.tpm import tpm2_objects, tpm_util
from tpmattest.tpm.errors import (
    AttestationError,
    MagicMismatch,
    MalformedCertification,
    ObjectNameMismatch,
    QualifyingDataMismatch,
    UnsupportedAlgorithm,
)
from tpmattest.tpm.types import TpmsAttest

logger = tpmattest_logging.init_logging("key_attestation")

AlgorithmId = Union[str, int]


@dataclass(frozen=True)
class VerificationResult:
    error: Optional[AttestationError] = None

    @property
    def valid(self) -> bool:
        return self.error is None

    @property
    def reason(self) -> Optional[str]:
        if self.error is None:
            return None
        return self.error.reason

    def __bool__(self) -> bool:
        return self.valid


class KeyAttestation:
    def __init__(
        self,
        certify_info: bytes,
        signature: bytes,
        attested_object: bytes,
        attestation_key: tpm_util.SupportedKeyTypes,
        hash_alg: AlgorithmId,
        qualifying_data: bytes,
        sig_alg: Optional[AlgorithmId] = None,
        accepted_hash_algs: Optional[List[str]] = None,
    ) -> None:
        """
        Parameters
        ----------
        certify_info: marshalled TPMS_ATTEST exactly as signed by the TPM
        signature: signature over certify_info; PKCS#1 or PSS for RSA keys, DER for EC keys
        attested_object: marshalled TPMT_PUBLIC of the certified object
        attestation_key: public part of the key that signed certify_info
        hash_alg: hash used for the signature, by name ("SHA256") or TPM algorithm id
        qualifying_data: the data the attestation is expected to carry in extraData
        sig_alg: signature scheme ("rsassa", "rsapss", "ecdsa"); derived from the key type if not given
        accepted_hash_algs: hashes accepted for the signature and the object name; all supported if not given
        """
        self.certify_info = bytes(certify_info)
        self.signature = bytes(signature)
        self.attested_object = bytes(attested_object)
        self.attestation_key = attestation_key
        self.hash_alg = hash_alg
        self.qualifying_data = bytes(qualifying_data)
        self.sig_alg = sig_alg
        self.accepted_hash_algs = list(accepted_hash_algs) if accepted_hash_algs is not None else None

    def _check_accepted(self, hash_alg: int) -> None:
        if self.accepted_hash_algs is None:
            return
        name = tpm2_objects.HASH_FUNCS[hash_alg].name
        if not algorithms.is_accepted(name, self.accepted_hash_algs):
            raise UnsupportedAlgorithm(f"Hash algorithm {name} is not accepted")

    def _resolve_hash_alg(self) -> int:
        hash_alg = tpm2_objects.hash_alg_from_name(self.hash_alg)
        if hash_alg is None:
            raise UnsupportedAlgorithm(f"Unsupported signature hash algorithm {self.hash_alg!r}")
        self._check_accepted(hash_alg)
        return hash_alg

    def _resolve_sig_alg(self) -> Optional[int]:
        if self.sig_alg is None:
            return None
        sig_alg = tpm2_objects.sig_alg_from_name(self.sig_alg)
        if sig_alg is None:
            raise UnsupportedAlgorithm(f"Unsupported signature scheme {self.sig_alg!r}")
        return sig_alg

    def _check_name(self, attest: TpmsAttest) -> None:
        name = attest.attested_name
        if name is None:
            raise ObjectNameMismatch(f"attestation of type {attest.attested_type:#x} does not certify an object name")

        try:
            name_alg = tpm2_objects.get_name_alg(name)
        except ValueError as e:
            raise ObjectNameMismatch("attested name is too short") from e

        # The name is recomputed with the algorithm the name itself claims,
        # which is independent of the signature hash
        if name_alg not in tpm2_objects.HASH_FUNCS:
            raise UnsupportedAlgorithm(f"Unsupported name algorithm {name_alg:#x}")
        self._check_accepted(name_alg)

        expected_name = tpm2_objects.compute_object_name(self.attested_object, name_alg)
        if not hmac.compare_digest(expected_name, name):
            raise ObjectNameMismatch("name of TPM object not found in attestation")

    def verify(self) -> TpmsAttest:
        """Check the attestation, raising the AttestationError of the first check that fails

        Returns the decoded TPMS_ATTEST.
        """
        hash_alg = self._resolve_hash_alg()
        sig_alg = self._resolve_sig_alg()

        # The signature covers the bytes as received, never a re-marshalled structure
        tpm_util.check_signature(self.attestation_key, self.signature, self.certify_info, hash_alg, sig_alg)

        try:
            attest = tpm2_objects.unmarshal_tpms_attest(self.certify_info)
        except ValueError as e:
            raise MalformedCertification(f"certify info could not be decoded: {e}") from e

        if attest.magic != tpm2_objects.TPM_GENERATED_VALUE:
            raise MagicMismatch(f"magic {attest.magic:#x} is not TPM_GENERATED_VALUE")

        if not hmac.compare_digest(attest.extra_data, self.qualifying_data):
            raise QualifyingDataMismatch("qualifying data does not match")

        self._check_name(attest)

        return attest

    def check(self) -> VerificationResult:
        try:
            self.verify()
        except AttestationError as e:
            logger.warning("Key attestation is not valid (%s): %s", e.reason, e)
            return VerificationResult(error=e)

        logger.debug("Key attestation verified")
        return VerificationResult()

    def valid(self) -> bool:
        return self.check().valid

    def attested_key(self) -> Optional[tpm2_objects.pubkey_type]:
        """Return the public key of the attested object

        None if the attestation is not valid or the attested object is not a
        TPMT_PUBLIC of an RSA or EC key.
        """
        if not self.valid():
            return None
        try:
            (pubkey, _, _) = tpm2_objects.unmarshal_tpmt_public(self.attested_object)
        except ValueError as e:
            logger.debug("Attested object carries no RSA or EC public key: %s", e)
            return None
        return pubkey


def verify_key_attestation(
    certify_info: bytes,
    signature: bytes,
    attested_object: bytes,
    attestation_key: tpm_util.SupportedKeyTypes,
    hash_alg: AlgorithmId,
    qualifying_data: bytes,
    sig_alg: Optional[AlgorithmId] = None,
    accepted_hash_algs: Optional[List[str]] = None,
) -> VerificationResult:
    return KeyAttestation(
        certify_info,
        signature,
        attested_object,
        attestation_key,
        hash_alg,
        qualifying_data,
        sig_alg=sig_alg,
        accepted_hash_algs=accepted_hash_algs,
    ).check()
