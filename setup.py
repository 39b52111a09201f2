from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="pylcr",
    version="0.1.0",
    description="Latent class regression with Newton-Raphson, Polya-Gamma nested, hybrid and three-step EM",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["lcr", "experiments", "experiments.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Mathematics",
    ],
    python_requires='>=3.8',
    install_requires=[
        "numpy",
        "pandas",
        "scikit-learn",
        "scipy",
        "joblib",
    ],
    extras_require={
        "test": ["pytest"]
    },
)
