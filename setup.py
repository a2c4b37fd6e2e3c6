from setuptools import find_packages, setup

with open("VERSION", "r") as version_file:
    version = version_file.read().strip()

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="rootlink",
    version=version,
    packages=find_packages(include=["rootlink", "rootlink.*"]),
    install_requires=[
        "aiohttp>=3.8.0",
        "aiohttp-cors>=0.7.0",
        "aiofiles>=23.0.0",
        "yarl>=1.9.0",
        "multidict>=6.0.0",
        "msgpack>=1.0.0",
        "click>=8.1.0",
        "pyyaml>=6.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
            "pytest-mock>=3.10.0",
            "aioresponses>=0.7.4",
            # aioresponses cannot mock aiohttp>=3.14 (ClientResponse gained stream_writer)
            "aiohttp<3.14",
            "types-PyYAML",
            "types-aiofiles",
        ]
    },
    entry_points={
        "console_scripts": [
            "rootlink=rootlink.cli:main",
        ],
    },
    python_requires=">=3.9",
    description="Rootlink - expose a local HTTP service through a public relay",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Networking",
        "Topic :: Internet :: WWW/HTTP",
        "Operating System :: OS Independent",
    ],
    keywords="tunnel, relay, localhost, webhook, http, reverse-proxy, websocket",
)
