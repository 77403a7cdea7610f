import base64
import io
import json
import os
import struct
import tempfile
import unittest
from configparser import RawConfigParser
from contextlib import redirect_stderr, redirect_stdout
from test.utils import QUALIFYING_DATA, make_attested_object, make_certify_info, make_name, rsa_sign
from unittest.mock import patch

import yaml
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tpmattest import config
from tpmattest.cmd import verify
from tpmattest.tpm import tpm2_objects


class TestVerifyCommand(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.attestation_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        cls.attested_object = make_attested_object()
        cls.certify_info = make_certify_info(QUALIFYING_DATA, make_name(cls.attested_object))
        cls.signature = rsa_sign(cls.attestation_key, cls.certify_info, hashes.SHA256())
        cls.pem = cls.attestation_key.public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        )

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.verifier_config = RawConfigParser()
        self.verifier_config.add_section("verifier")
        patcher = patch.object(config, "_config", {"verifier": self.verifier_config})
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.tmpdir.cleanup()

    def write(self, name, data):
        path = os.path.join(self.tmpdir.name, name)
        mode = "wb" if isinstance(data, bytes) else "w"
        with open(path, mode) as f:  # pylint: disable=unspecified-encoding
            f.write(data)
        return path

    def file_args(self, signature=None, qualifying_data=QUALIFYING_DATA):
        return [
            "--certify-info",
            self.write("attest.out", self.certify_info),
            "--signature",
            self.write("sig.out", signature if signature is not None else self.signature),
            "--attested-object",
            self.write("key.pub", self.attested_object),
            "--public-key",
            self.write("ak.pem", self.pem),
            "--hash-alg",
            "sha256",
            "--qualifying-data",
            qualifying_data.hex(),
        ]

    def run_main(self, argv):
        stdout = io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(io.StringIO()):
            ret = verify.main(argv)
        output = stdout.getvalue()
        return ret, json.loads(output) if output else None

    def test_valid_from_files(self):
        ret, output = self.run_main(self.file_args())
        self.assertEqual(ret, verify.EXIT_VALID)
        self.assertTrue(output["valid"])
        self.assertEqual(output["attested_name"], make_name(self.attested_object).hex())
        self.assertEqual(output["object_name"], output["attested_name"])
        self.assertIn("sign-encrypt", output["object_attributes"])
        self.assertNotIn("reason", output)

    def test_qualifying_data_file(self):
        args = self.file_args()[:-2] + ["--qualifying-data-file", self.write("nonce", QUALIFYING_DATA)]
        ret, output = self.run_main(args)
        self.assertEqual(ret, verify.EXIT_VALID)
        self.assertTrue(output["valid"])

    def test_invalid_qualifying_data(self):
        ret, output = self.run_main(self.file_args(qualifying_data=b"other nonce"))
        self.assertEqual(ret, verify.EXIT_INVALID)
        self.assertFalse(output["valid"])
        self.assertEqual(output["reason"], "extra_data_mismatch")

    def test_invalid_signature(self):
        ret, output = self.run_main(self.file_args(signature=b"\x00" * 256))
        self.assertEqual(ret, verify.EXIT_INVALID)
        self.assertEqual(output["reason"], "signature_invalid")

    def test_tss_signature(self):
        blob = (
            struct.pack(">HHH", tpm2_objects.TPM_ALG_RSASSA, tpm2_objects.TPM_ALG_SHA256, len(self.signature))
            + self.signature
        )
        args = self.file_args(signature=blob)
        args.remove("--hash-alg")
        args.remove("sha256")
        ret, output = self.run_main(args + ["--signature-format", "tss"])
        self.assertEqual(ret, verify.EXIT_VALID)
        self.assertTrue(output["valid"])

    def test_tss_signature_undecodable(self):
        ret, output = self.run_main(self.file_args(signature=b"\x00\x14") + ["-f", "tss"])
        self.assertEqual(ret, verify.EXIT_INVALID)
        self.assertEqual(output["reason"], "signature_invalid")

    def test_signature_format_from_config(self):
        self.verifier_config.set("verifier", "signature_format", "tss")
        ret, output = self.run_main(self.file_args())
        # A raw PKCS#1 signature does not decode as a TPMT_SIGNATURE
        self.assertEqual(ret, verify.EXIT_INVALID)
        self.assertEqual(output["reason"], "signature_invalid")

    def test_accepted_hash_algs_from_config(self):
        self.verifier_config.set("verifier", "accepted_hash_algs", '["sha384", "sha512"]')
        ret, output = self.run_main(self.file_args())
        self.assertEqual(ret, verify.EXIT_INVALID)
        self.assertEqual(output["reason"], "unsupported_algorithm")

    def test_accepted_hash_algs_unknown_entries(self):
        self.verifier_config.set("verifier", "accepted_hash_algs", '["sha256", "md5"]')
        with self.assertLogs("tpmattest.verify", level="WARNING") as cm:
            self.assertEqual(verify.accepted_hash_algs(), ["sha256"])
        self.assertIn("md5", cm.output[0])

    def test_public_key_formats(self):
        der = self.attestation_key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        tpm = tpm2_objects.tpm2b_public_from_pubkey(
            self.attestation_key.public_key(), tpm2_objects.TPM_ALG_SHA256, tpm2_objects.OA_SIGN_ENCRYPT
        )
        for key_format, data in [("der", der), ("tpm", tpm)]:
            args = self.file_args()
            args[args.index("--public-key") + 1] = self.write(f"ak.{key_format}", data)
            ret, output = self.run_main(args + ["--public-key-format", key_format])
            self.assertEqual(ret, verify.EXIT_VALID, msg=f"format = {key_format}")
            self.assertTrue(output["valid"])

    def test_evidence(self):
        evidence = {
            "certify_info": base64.b64encode(self.certify_info).decode(),
            "signature": base64.b64encode(self.signature).decode(),
            "attested_object": base64.b64encode(self.attested_object).decode(),
            "qualifying_data": base64.b64encode(QUALIFYING_DATA).decode(),
            "public_key": self.pem.decode(),
            "hash_alg": "sha256",
        }
        ret, output = self.run_main(["--evidence", self.write("evidence.yaml", yaml.safe_dump(evidence))])
        self.assertEqual(ret, verify.EXIT_VALID)
        self.assertTrue(output["valid"])

        # JSON is YAML too
        ret, output = self.run_main(["-e", self.write("evidence.json", json.dumps(evidence))])
        self.assertEqual(ret, verify.EXIT_VALID)

        evidence["qualifying_data"] = base64.b64encode(b"other nonce").decode()
        ret, output = self.run_main(["-e", self.write("evidence.json", json.dumps(evidence))])
        self.assertEqual(ret, verify.EXIT_INVALID)
        self.assertEqual(output["reason"], "extra_data_mismatch")

    def test_evidence_algorithm_fields(self):
        evidence = {
            "certify_info": base64.b64encode(self.certify_info).decode(),
            "signature": base64.b64encode(self.signature).decode(),
            "attested_object": base64.b64encode(self.attested_object).decode(),
            "qualifying_data": base64.b64encode(QUALIFYING_DATA).decode(),
            "public_key": self.pem.decode(),
        }
        for field, value in [("hash_alg", ["sha256"]), ("hash_alg", {"name": "sha256"}), ("sig_alg", True)]:
            doc = dict(evidence, **{field: value})
            ret, output = self.run_main(["-e", self.write("evidence.yaml", yaml.safe_dump(doc))])
            self.assertEqual(ret, verify.EXIT_USAGE, msg=f"{field} = {value}")
            self.assertIsNone(output)

        # A TPM algorithm id is accepted as is
        doc = dict(evidence, hash_alg=tpm2_objects.TPM_ALG_SHA256)
        ret, output = self.run_main(["-e", self.write("evidence.yaml", yaml.safe_dump(doc))])
        self.assertEqual(ret, verify.EXIT_VALID)

    def test_evidence_errors(self):
        for content in [
            "- not\n- a mapping\n",
            yaml.safe_dump({"certify_info": "AAAA"}),
            yaml.safe_dump(
                {
                    "certify_info": "not base64!",
                    "signature": "",
                    "attested_object": "",
                    "qualifying_data": "",
                    "public_key": "",
                }
            ),
            "certify_info: [unclosed",
        ]:
            ret, output = self.run_main(["-e", self.write("evidence.yaml", content)])
            self.assertEqual(ret, verify.EXIT_USAGE, msg=content)
            self.assertIsNone(output)

    def test_bad_hex(self):
        args = self.file_args()
        args[-1] = "not hex"
        ret, output = self.run_main(args)
        self.assertEqual(ret, verify.EXIT_USAGE)
        self.assertIsNone(output)

    def test_missing_file(self):
        args = self.file_args()
        args[args.index("--certify-info") + 1] = os.path.join(self.tmpdir.name, "missing")
        ret, _ = self.run_main(args)
        self.assertEqual(ret, verify.EXIT_USAGE)

    def test_missing_options(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                verify.main(["--certify-info", "attest.out"])
        self.assertEqual(cm.exception.code, verify.EXIT_USAGE)

    def test_exclusive_qualifying_data(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                verify.main(self.file_args() + ["--qualifying-data-file", "nonce"])
        self.assertEqual(cm.exception.code, verify.EXIT_USAGE)


if __name__ == "__main__":
    unittest.main()
