import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="regtest-block-controller",
    version="0.1.0",
    description="Controller that drives block production on a regtest bitcoind",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "fastapi>=0.100",
        "pydantic>=2",
        "requests>=2.28",
        "uvicorn>=0.20",
    ],
    extras_require={
        "test": ["pytest>=7", "httpx>=0.24"],
    },
    entry_points={
        "console_scripts": ["regtest-controller=controller.__main__:main"],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
