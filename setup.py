from setuptools import setup, find_packages

setup(
    name="keystack",
    version="0.1.0",
    description=(
        "Render an SSH public key into a CloudFormation template and deploy "
        "an EC2 instance reachable with it."
    ),
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    package_data={"keystack": ["templates/*.yml"]},
    python_requires=">=3.9",
    install_requires=[
        "boto3",
        "botocore",
        "cli-core-yo<2",
        "cryptography",
        "pydantic>=2",
        "PyYAML",
        "rich",
        "typer",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "keystack=keystack.cli:main",
        ],
    },
)
