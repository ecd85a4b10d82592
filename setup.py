"""
PitchInsight build script.

Usage:
    # Development (editable install with test tools):
    pip install -e ".[test]"

    # Run the API:
    python3 main.py serve
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "pitchinsight"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Pitch video transcription and AI feedback pipeline",
    packages=find_namespace_packages(include=["pitchinsight", "pitchinsight.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "python-dotenv>=1.0.0",
        "boto3>=1.28.0",
        "fastapi>=0.110.0",
        "pydantic>=2.0",
        "uvicorn>=0.27.0",
    ],
    extras_require={
        "test": [
            "httpx>=0.25.0",
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pitchinsight=main:main",
        ],
    },
    python_requires=">=3.10",
)
