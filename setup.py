from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="webrtc-gateway",
    version="0.1.0",
    author="WebRTC Gateway Contributors",
    author_email="",
    description="Local WebRTC signaling gateway for viewing a device stream in the browser",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Multimedia :: Video :: Display",
        "Topic :: Internet :: WWW/HTTP",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "gstreamer": [
            "PyGObject>=3.42.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-mock>=3.10.0",
            "mypy>=1.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "isort>=5.10.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "webrtc-gateway=webrtc_gateway.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "webrtc_gateway": [
            "config/*.yaml",
            "static/*.html",
        ],
    },
)
