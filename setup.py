"""
SPDX-License-Identifier: Apache-2.0
"""

import os

import setuptools

setup_dir = os.path.dirname(os.path.abspath(__file__))


def config_files():
    config_dir = os.path.join(setup_dir, "config")
    if not os.path.isdir(config_dir):
        return []
    return [
        ("etc/tpmattest", [os.path.join("config", f) for f in sorted(os.listdir(config_dir)) if f.endswith(".conf")])
    ]


if __name__ == "__main__":
    setuptools.setup(
        name="tpmattest",
        version="0.1.0",
        description="Verifier for TPM 2.0 key attestations",
        license="Apache-2.0",
        python_requires=">=3.8",
        packages=setuptools.find_packages(exclude=["test", "test.*"]),
        install_requires=[
            "cryptography>=3.3",
            "pyyaml",
        ],
        extras_require={
            "test": ["pytest"],
        },
        data_files=config_files(),
        entry_points={
            "console_scripts": [
                "tpmattest_verify = tpmattest.cmd.verify:main",
            ],
        },
    )
