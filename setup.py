#!/usr/bin/env python3
"""
Setup script for Parley - live spoken conversation server
"""
from setuptools import setup, find_packages
import os
import re

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()


# Read version from the package, or set default
def get_version():
    try:
        with open(os.path.join(this_directory, 'src', 'parley', '__init__.py'), 'r') as f:
            content = f.read()
            version_match = re.search(r'__version__ = "([^"]+)"', content)
            if version_match:
                return version_match.group(1)
    except FileNotFoundError:
        pass
    return "1.0.0"


setup(
    name="parley",
    version=get_version(),
    author="Parley Team",
    description="Interruptible voice conversation server: streaming recognition, routed generation, chunked speech",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    package_dir={"": "src"},
    include_package_data=True,
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Sound/Audio :: Speech",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    keywords="voice-assistant speech websocket barge-in tts stt llm",
    python_requires=">=3.10",
    install_requires=[
        "PyYAML>=6.0",
        "requests>=2.25.0",
        "psutil>=5.8.0",
        "flask>=2.0.0",
        "websockets>=13.0",
        "PyPDF2>=3.0.0",
        "python-docx>=0.8.11",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "black>=22.0.0",
            "flake8>=4.0.0",
            "mypy>=0.950",
            "pre-commit>=2.17.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "parley=parley.cli:main",
            "parley-server=parley.server:main",
        ],
    },
)
