from setuptools import setup, find_packages

setup(
    name="cicd-workflow",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "kubernetes>=28.1.0",
        "PyYAML>=6.0",
        "click>=8.1.0",
        "rich>=13.7.0",
        "structlog>=24.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "cicd-workflow=cicd_workflow.cli:cli",
        ],
    },
    description="Assembly and submission of CI/CD workflows to Argo Workflows or Kubernetes Jobs",
    python_requires=">=3.8",
)
