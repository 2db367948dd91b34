from setuptools import setup, find_packages

setup(
    name="holder-drop",
    version="0.1.0",
    description="Snapshot SPL token holders and distribute rewards to them in confirmed batches",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Holder Drop Contributors",
    packages=find_packages(where=".", exclude=["tests", "tests.*"]),
    install_requires=[
        "rich>=10.0.0",
        "python-dotenv>=0.19.0",
        "requests>=2.26.0",
        "pandas>=1.3.0",
        "apscheduler>=3.9,<4",
        "base58>=2.1.0",
        "solders>=0.21.0",
        "solana>=0.34.0,<0.40",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    entry_points={
        "console_scripts": [
            "holder-drop=holder_drop.cli:main",
        ],
    },
)
