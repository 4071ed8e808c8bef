"""Build sharecode package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="sharecode",
    version="0.1.0",
    description="Peer-to-peer file sharing with short numeric share codes",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(
        exclude=["tests", "tests.*", "testing", "testing.*"],
    ),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.5.0",
        "click",
        "cryptography",
        "pydantic>=2",
        "redis>=5.0.1",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions ; python_version<'3.11'",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio>=0.24",
            "uvloop",
        ],
    },
    entry_points={
        "console_scripts": [
            "sharecode=sharecode.cli:cli",
        ],
    },
)
