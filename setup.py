from setuptools import setup, find_packages

setup(
    name="omnicc",
    version="0.1",
    author="The omnicc Authors",
    description="Omnibus Configuration Reconciler",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "PyYAML",
        "jsonschema",
        "ldap3",
        "APScheduler>=3.9,<4",
        "tomli; python_version < '3.11'",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["omnicc=omnicc.commands.main:main"],
    },
    data_files=[
        (
            "share/omnicc/examples",
            ["examples/gitlab.json", "examples/staging-override.yaml"],
        )
    ],
)
