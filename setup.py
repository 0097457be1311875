"""
setup.py - Project Setup

  pip install -e .            engine, ledger node and CLI
  pip install -e .[test]      + pytest
  pip install -e .[webcam]    + OpenCV / face_recognition for live capture

Entry points:
  face-ledger-node     start the ledger node (server/api.py)
  face-ledger          client CLI (client/client_app.py)
"""

from setuptools import setup, find_packages

REQUIREMENTS = [
    "flask>=2.3",
    "cryptography>=41.0",
    "PyJWT>=2.8",
    "numpy>=1.24",
    "requests>=2.31",
]

EXTRAS = {
    "test": ["pytest>=7.4"],
    "webcam": ["opencv-python>=4.8", "face_recognition>=1.3"],
}


setup(
    name="face-ledger-auth",
    version="1.0.0",
    description="Passwordless face registration and login over a digest ledger with local fallback",
    python_requires=">=3.10",
    packages=find_packages(include=["client", "client.*", "server", "server.*",
                                    "common", "common.*"]),
    install_requires=REQUIREMENTS,
    extras_require=EXTRAS,
    entry_points={
        "console_scripts": [
            "face-ledger-node=server.api:main",
            "face-ledger=client.client_app:main",
        ],
    },
)
