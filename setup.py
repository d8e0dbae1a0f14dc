#!/usr/bin/env python3

from setuptools import find_packages, setup

from courier import __version__

setup(
    name="courier",
    description="Artifact rollout over SSH and WinRM",
    long_description="Command-line client deploying an artifact with a "
    + "runtime class onto fleets of Linux and Windows hosts.",
    version=__version__,
    python_requires=">=3.11",
    install_requires=[
        "paramiko",
        "pywinrm>=0.5.0",
        "pyxdg",
        "ruamel.yaml",
        "requests",
        "urllib3",
    ],
    include_package_data=True,
    package_data={
        "courier.runtime": [
            "builtin/*/linux/*.sh",
            "builtin/*/windows/*.ps1",
        ]
    },
    extras_require={"test": ["pytest"]},
    license="License :: OSI Approved :: Apache Software License",
    platforms=["Linux"],
    keywords=["deployment", "ssh", "winrm", "rollout"],
    packages=find_packages(exclude=["*.tests", "*.tests.*", "tests.*", "tests"]),
    entry_points={"console_scripts": ["courier = courier.main:main"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX :: Linux",
        "Environment :: Console",
    ],
)
