# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from os import path
from setuptools import setup  # type: ignore

PACKAGE_NAME = "attestor_e2e"
TEMPLATES_PATH = path.join("templates", "*.jinja")

path_here = path.abspath(path.dirname(__file__))

with open(path.join(path_here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

with open(path.join(path_here, "requirements.txt"), encoding="utf-8") as f:
    requirements = f.read().splitlines()

setup(
    name="attestor-e2e",
    version="0.1.0",
    description="Parallel bootstrap of IBC attestor pools for end-to-end tests",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="Apache License 2.0",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
    ],
    packages=[PACKAGE_NAME],
    package_data={PACKAGE_NAME: [TEMPLATES_PATH]},
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={"test": ["pytest"]},
    entry_points={
        "console_scripts": [
            "attestor-e2e-start = attestor_e2e.start_attestors:main",
        ]
    },
    include_package_data=True,
)
