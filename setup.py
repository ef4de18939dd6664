from setuptools import setup, find_packages
import os


def read_requirements():
    with open(os.path.join(os.path.dirname(__file__), "requirements.txt"), encoding="utf-8") as f:
        return [line for line in f.read().splitlines() if line and not line.startswith("#")]


setup(
    name="flagkit",
    version="1.0.0",
    description="Client-side feature flag and experimentation SDK driven by project datafiles",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={"flagkit": ["datafile_schema.json"]},
    install_requires=read_requirements(),
    extras_require={"test": ["pytest"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
)
