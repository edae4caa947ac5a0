import setuptools

with open("stratum/.version") as f:
    version = f.read().strip()

setuptools.setup(
    name="stratum",
    version=version,
    python_requires=">=3.11.0",
    author="blissful",
    author_email="blissful@sunsetglow.net",
    license="Apache-2.0",
    entry_points={"console_scripts": ["stratum = stratum.__main__:main"]},
    packages=["stratum"],
    package_data={"stratum": [".version", "py.typed"]},
    install_requires=[
        "appdirs",
        "cachetools",
        "click",
        "llfuse",
        "tomli-w",
        "uuid6",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
