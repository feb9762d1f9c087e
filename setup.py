from setuptools import setup, find_packages

setup(
    name="stackproof",
    version="0.1.0",
    description="stackproof: compiler, prover and verifier for a small typed contract language",
    packages=find_packages(exclude=["tests*", "examples*"]),
    python_requires=">=3.10",
    install_requires=[
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7",
            "hypothesis>=6",
        ],
    },
)
