"""Setup script for the facegate face recognition package."""

from setuptools import setup, find_namespace_packages
from pathlib import Path

# Read README if it exists
readme_file = Path(__file__).parent / "README.md"
long_description = ""
if readme_file.exists():
    long_description = readme_file.read_text(encoding="utf-8")

setup(
    name="facegate",
    version="0.1.0",
    description="Keypoint face validation, geometric embeddings and gallery matching for camera check-in",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Facegate Team",
    # Subpackages carry no __init__.py, so collect them as namespace packages
    packages=find_namespace_packages(include=["facegate", "facegate.*", "scripts"]),
    python_requires=">=3.9",
    install_requires=[
        "opencv-python>=4.9.0",
        "numpy>=1.26.0",
        "pandas>=2.2.0",
        "pyarrow>=15.0.0",
        "pyyaml>=6.0.0",
        "scipy",
        "scikit-learn",
    ],
    extras_require={
        "retina": [
            "insightface>=0.7.3",
            "onnxruntime>=1.16.3",
        ],
        "mesh": [
            "mediapipe>=0.10.0",
        ],
        "dev": [
            "pytest>=7.4.0",
            "black",
            "flake8",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "facegate-scan=scripts.run_scanner:main",
            "facegate-enroll=scripts.enroll_member:main",
            "facegate-calibrate=scripts.calibrate_thresholds:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
