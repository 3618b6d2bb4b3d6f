# -*- coding: utf-8 -*-
"""secret-rotation-controller a control loop for provisioning and rotating secrets.

Declared secrets are created and rotated in their backing stores (Kubernetes, Vault,
Google Secret Manager) and new versions are rolled out to consuming workloads in
health gated waves.

"""

import setuptools
import re
from io import open

VERSIONFILE="secret_rotation_controller/_version.py"
verstrline = open(VERSIONFILE, "rt").read()
VSRE = r"^__version__ = ['\"]([^'\"]*)['\"]"
mo = re.search(VSRE, verstrline, re.M)
if mo:
    verstr = mo.group(1)
else:
    raise RuntimeError("Unable to find version string in %s." % (VERSIONFILE,))

with open("README.md", "r", encoding='utf-8') as fh:
    long_description = fh.read()

setuptools.setup(
    name='secret_rotation_controller',
    version=verstr,
    author="Mike Moore",
    author_email="z_z_zebra@yahoo.com",
    description="A controller that provisions secrets across backends, rotates them on policy and rolls new versions out to consumers in health gated waves",
    long_description_content_type="text/markdown",
    long_description=long_description,
    url="https://github.com/Mikemoore63/secret-rotation-controller",
    packages=setuptools.find_packages(exclude=["*.tests", "*.tests.*"]),
    python_requires=">=3.8",
    include_package_data=True,
    license="MIT",
    scripts=[],
    install_requires=[
        "google-cloud-secret-manager~=2.0",
        "google-cloud-storage>1.0,<4.0",
        "google-crc32c~=1.0",
        "google-auth>=2.0",
        "google-api-core>=2.0",
        "grpcio~=1.0",
        "python-dateutil~=2.0",
        "pytz>=2022.0",
        "hvac>=1.0,<3.0",
        "requests>=2.0,<3.0",
        "kubernetes>=24.0",
        "urllib3>=1.26,<3.0",
        "tenacity>=8.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],

)
