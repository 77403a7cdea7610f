import argparse
import base64
import json
import sys
from typing import Any, Dict, List, Optional, Union

import yaml
from cryptography.hazmat.primitives import serialization

try:
    from yaml import CSafeLoader as SafeLoader
except ImportError:
    from yaml import SafeLoader  # type: ignore

from tpmattest import config, tpmattest_logging
from tpmattest.common.algorithms import Hash, Sign
from tpmattest.tpm import tpm2_objects, tpm_util
from tpmattest.tpm.errors import IncorrectSignature
from tpmattest.tpm.key_attestation import KeyAttestation, VerificationResult

logger = tpmattest_logging.init_logging("verify")

# pylint: disable=pointless-string-statement
"""
Verify a TPM 2.0 key attestation as produced by tpm2_certify.

Example usage:

```
tpm2_certify -c key.ctx -C ak.ctx -g sha256 -q <nonce> -o attest.out -s sig.out -f plain
tpmattest_verify --certify-info attest.out --signature sig.out --attested-object key.pub.tpmt \
    --public-key ak.pem --hash-alg sha256 --qualifying-data <nonce>
```

or, with all the evidence in one YAML (or JSON) document holding base64
encoded certify_info, signature, attested_object and qualifying_data fields
and a PEM public_key:

```
tpmattest_verify --evidence evidence.yaml
```
"""

EXIT_VALID = 0
EXIT_INVALID = 1
EXIT_USAGE = 2


class EvidenceError(Exception):
    pass


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def load_evidence(path: str) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        doc = yaml.load(f, Loader=SafeLoader)
    if not isinstance(doc, dict):
        raise EvidenceError(f"Evidence in {path} is not a mapping")
    return doc


def _b64_field(doc: Dict[str, Any], field: str) -> bytes:
    if field not in doc:
        raise EvidenceError(f"Evidence is missing the '{field}' field")
    try:
        return base64.b64decode(doc[field], validate=True)
    except (TypeError, ValueError) as e:
        raise EvidenceError(f"Evidence field '{field}' is not valid base64") from e


def _algorithm_field(doc: Dict[str, Any], field: str) -> Optional[Union[str, int]]:
    value = doc.get(field)
    # bool is an int subclass but never an algorithm id
    if value is None or (isinstance(value, (str, int)) and not isinstance(value, bool)):
        return value
    raise EvidenceError(f"Evidence field '{field}' must be an algorithm name or id")


def load_public_key(data: bytes, key_format: str) -> Any:
    if key_format == "tpm":
        return tpm2_objects.pubkey_from_tpm2b_public(data)
    if key_format == "der":
        return serialization.load_der_public_key(data)
    return serialization.load_pem_public_key(data)


def accepted_hash_algs() -> List[str]:
    accepted = config.getlist("verifier", "accepted_hash_algs", fallback=config.DEFAULT_ACCEPTED_HASH_ALGS)
    for alg in accepted:
        if not Hash.is_recognized(str(alg)):
            logger.warning("Ignoring unknown hash algorithm '%s' in accepted_hash_algs", alg)
    return [str(alg) for alg in accepted if Hash.is_recognized(str(alg))]


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tpmattest_verify", description="Verify a TPM 2.0 key attestation")
    parser.add_argument("-e", "--evidence", help="YAML or JSON document holding the whole evidence", action="store")
    parser.add_argument("-i", "--certify-info", help="Marshalled TPMS_ATTEST file", action="store")
    parser.add_argument("-s", "--signature", help="Signature over the certify info", action="store")
    parser.add_argument("-o", "--attested-object", help="Marshalled TPMT_PUBLIC of the certified key", action="store")
    parser.add_argument("-k", "--public-key", help="Public key of the attestation key", action="store")
    parser.add_argument(
        "--public-key-format",
        help="Format of the attestation public key",
        choices=["pem", "der", "tpm"],
        default="pem",
    )
    parser.add_argument("-g", "--hash-alg", help="Hash algorithm used for the signature", action="store")
    parser.add_argument("--sig-alg", help="Signature scheme", choices=[s.value for s in Sign], action="store")
    parser.add_argument(
        "-f",
        "--signature-format",
        help="Signature encoding: raw signature bytes or a TPMT_SIGNATURE",
        choices=["raw", "tss"],
        action="store",
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("-q", "--qualifying-data", help="Expected qualifying data, hex encoded", action="store")
    group.add_argument("--qualifying-data-file", help="File holding the expected qualifying data", action="store")
    return parser


def _print_result(result: VerificationResult, extra: Optional[Dict[str, Any]] = None) -> None:
    output: Dict[str, Any] = {"valid": result.valid}
    if result.error is not None:
        output["reason"] = result.reason
        output["error"] = str(result.error)
    if extra:
        output.update(extra)
    print(json.dumps(output, indent=2))


def _describe(ka: KeyAttestation) -> Dict[str, Any]:
    attest = tpm2_objects.unmarshal_tpms_attest(ka.certify_info)
    info: Dict[str, Any] = {
        "attested_name": attest.attested_name.hex() if attest.attested_name is not None else None,
        "qualified_signer": attest.qualified_signer.hex(),
        "firmware_version": attest.firmware_version,
    }
    try:
        # Name under the object's own nameAlg, which can differ from the one the attestation claims
        info["object_name"] = tpm2_objects.get_tpmt_public_name(ka.attested_object).hex()
        attrs = tpm2_objects.get_tpmt_public_object_attributes(ka.attested_object)
        info["object_attributes"] = tpm2_objects.object_attributes_description(attrs)
    except ValueError:
        logger.debug("Attested object is not a TPMT_PUBLIC")
    return info


def main(argv: Optional[List[str]] = None) -> int:
    parser = get_parser()
    args = parser.parse_args(argv)

    hash_alg: Any = args.hash_alg
    sig_alg: Any = args.sig_alg
    signature_format = args.signature_format or config.get("verifier", "signature_format", fallback="raw")

    try:
        if args.evidence:
            evidence = load_evidence(args.evidence)
            certify_info = _b64_field(evidence, "certify_info")
            signature = _b64_field(evidence, "signature")
            attested_object = _b64_field(evidence, "attested_object")
            qualifying_data = _b64_field(evidence, "qualifying_data")
            if "public_key" not in evidence:
                raise EvidenceError("Evidence is missing the 'public_key' field")
            pubkey = load_public_key(str(evidence["public_key"]).encode(), "pem")
            hash_alg = hash_alg or _algorithm_field(evidence, "hash_alg")
            sig_alg = sig_alg or _algorithm_field(evidence, "sig_alg")
        else:
            missing = [
                opt
                for opt, val in [
                    ("--certify-info", args.certify_info),
                    ("--signature", args.signature),
                    ("--attested-object", args.attested_object),
                    ("--public-key", args.public_key),
                ]
                if not val
            ]
            if missing:
                parser.error(f"missing required options: {', '.join(missing)}")
            certify_info = _read_file(args.certify_info)
            signature = _read_file(args.signature)
            attested_object = _read_file(args.attested_object)
            pubkey = load_public_key(_read_file(args.public_key), args.public_key_format)
            if args.qualifying_data_file:
                qualifying_data = _read_file(args.qualifying_data_file)
            else:
                qualifying_data = bytes.fromhex(args.qualifying_data or "")
    except (OSError, ValueError, yaml.YAMLError, EvidenceError) as e:
        logger.error("Could not load the evidence: %s", e)
        return EXIT_USAGE

    if signature_format == "tss":
        try:
            tss_sig_alg, tss_hash_alg, signature = tpm_util.unmarshal_tpmt_signature(signature)
        except ValueError as e:
            _print_result(VerificationResult(error=IncorrectSignature(f"signature blob could not be decoded: {e}")))
            return EXIT_INVALID
        hash_alg = hash_alg or tss_hash_alg
        sig_alg = sig_alg or tss_sig_alg

    ka = KeyAttestation(
        certify_info,
        signature,
        attested_object,
        pubkey,
        hash_alg or "sha256",
        qualifying_data,
        sig_alg=sig_alg,
        accepted_hash_algs=accepted_hash_algs(),
    )
    result = ka.check()
    if not result.valid:
        _print_result(result)
        return EXIT_INVALID

    _print_result(result, _describe(ka))
    return EXIT_VALID


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as e:
        logger.exception(e)
        sys.exit(-1)
