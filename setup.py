from setuptools import setup, find_namespace_packages

setup(
    name="dockwright",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["dockwright*"]),
    package_dir={"": "src"},
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "docker>=6.0",
        "requests>=2.28",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
        "dev": [
            "black>=23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "dockwright=dockwright.CLI.main:main",
        ],
    },
)
