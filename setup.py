from setuptools import setup, find_packages


with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='conesens',
    version="0.1.0",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.8",
    install_requires=[
        "numpy >= 1.15",
        "scipy >= 1.1.0",
        "scs >= 3.0",
        "ecos",
        "clarabel",
        "threadpoolctl >= 1.1"],
    extras_require={
        "test": ["pytest", "cvxpy"],
    },
    license="Apache License, Version 2.0",
    classifiers=[
        "Programming Language :: Python :: 3",
    ],
)
