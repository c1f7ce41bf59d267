import os
import re
from codecs import open

from setuptools import find_packages
from setuptools import setup

# Based on https://github.com/pypa/sampleproject/blob/main/setup.py
# and https://python-packaging-user-guide.readthedocs.org/

here = os.path.abspath(os.path.dirname(__file__))

with open(os.path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()
long_description_content_type = "text/markdown"

with open(os.path.join(here, "echcurl/version.py")) as f:
    match = re.search(r'VERSION = "(.+?)"', f.read())
    assert match
    VERSION = match.group(1)

setup(
    name="echcurl",
    version=VERSION,
    description="A curl-like HTTP client with Encrypted ClientHello, encrypted DNS and HTTP/3 support.",
    long_description=long_description,
    long_description_content_type=long_description_content_type,
    license="MIT",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Operating System :: MacOS",
        "Operating System :: POSIX",
        "Operating System :: Microsoft :: Windows",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Security",
        "Topic :: Internet :: WWW/HTTP",
        "Topic :: Internet :: Name Service (DNS)",
        "Topic :: System :: Networking",
        "Typing :: Typed",
    ],
    packages=find_packages(
        include=[
            "echcurl",
            "echcurl.*",
        ]
    ),
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "echcurl = echcurl.tools.main:echcurl",
        ],
    },
    python_requires=">=3.12",
    # https://packaging.python.org/en/latest/discussions/install-requires-vs-requirements/#install-requires
    # It is not considered best practice to use install_requires to pin dependencies to specific versions.
    install_requires=[
        "aioquic>=1.2,<2",
        "certifi>=2019.9.11",  # no semver here - this should always be on the last release!
        "cryptography>=42.0,<47",
        "h11>=0.14,<0.17",
        "h2>=4.1,<5",
        "hyperframe>=6.0,<7",
        "mitmproxy_rs>=0.10,<0.13",
        "pyOpenSSL>=24.0,<26",
    ],
    extras_require={
        "dev": [
            "hypothesis>=6.0,<7",
            "pytest-timeout>=2.1,<3",
            "pytest>=8.0,<9",
        ],
    },
)
