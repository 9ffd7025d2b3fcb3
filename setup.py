import os

from setuptools import find_packages, setup


def get_version():
    topdir = os.path.abspath(os.path.join(__file__, ".."))
    with open(os.path.join(topdir, "sgpff", "__init__.py"), "r") as f:
        for line in f.readlines():
            if line.startswith("__version__"):
                delim = '"' if '"' in line else "'"
                return line.split(delim)[1]
    raise ValueError("Version string not found")


VERSION = get_version()

setup(
    name="sgpff",
    version=VERSION,
    description="Sparse Gaussian process force fields for atomistic simulation",
    license="GPL-3.0-or-later",
    python_requires=">=3.8",
    include_package_data=True,
    packages=find_packages(exclude=["*examples*"]),
    install_requires=[
        "numpy",
        "scipy",
        "scikit-learn",
        "pyscf",
        "ase",
        "pyyaml",
        "joblib",
    ],
    extras_require={
        "test": ["pytest"],
        "docs": ["sphinx", "sphinx_rtd_theme"],
    },
)
