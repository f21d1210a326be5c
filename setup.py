from setuptools import setup, find_packages

setup(
    name="cargo-hyperlight",
    description="Build hyperlight guest binaries with cargo",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    keywords=["cargo", "rust", "hyperlight", "sysroot"],
    python_requires=">=3.11",
    packages=find_packages(exclude=("tests", "tests.*")),
    install_requires=[
        "returns",
        "toml",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "cargo-hyperlight = cargo_hyperlight.main:main",
        ]
    },
    setup_requires=[
        "setuptools>=42",
        "setuptools_scm>=3.5",
    ],
    use_scm_version={
        "write_to": "cargo_hyperlight/__version__.py",
        "fallback_version": "0.1.0",
    },
)
