from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fp:
    long_description = fp.read()

setup(
    name="glauncher",
    version="0.1.0",
    description="glauncher is a module providing the launch pipeline of a game launcher: version metadata "
                "resolution, artifact downloads, command line assembly and process supervision.",
    packages=["glauncher"],
    python_requires=">=3.8",
    install_requires=["certifi"],
    extras_require={"test": ["pytest"]},
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="GPL-3.0",
)
