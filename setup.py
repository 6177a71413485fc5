# setup.py
from setuptools import setup, find_packages

setup(
    name="simchain",
    version="0.1.0",
    packages=find_packages(include=["simchain", "simchain.*"]),
    python_requires=">=3.10",
    install_requires=[
        "wasmtime>=17",         # contract runtime (fuel metering)
        "msgpack",              # snapshots, block hashing
        "rlp",                  # address and transaction hashing
        "pycryptodome",         # keccak-256
        "prometheus_client",    # metrics
        "psutil",               # monitoring
        "requests",             # remote JSON-RPC client
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
)
