"""Build signalrelay package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="signalrelay",
    version="0.1.0",
    description="Rendezvous relay for WebRTC signaling between peers",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests*", "testing*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=[
        "aiortc>=1.5.0",
        "click",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13",
    ],
    extras_require={
        "dev": [
            "coverage",
            "cryptography",
            "pytest",
            "pytest-asyncio>=0.23.2",
            "pytest-timeout",
        ],
    },
    entry_points={
        "console_scripts": [
            "signal-relay=signalrelay.run:cli",
        ],
    },
)
