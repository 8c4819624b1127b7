"""Setup configuration for mr_timeline"""

from setuptools import setup, find_packages

setup(
    name="gitlab-mr-timeline",
    version="0.1.0",
    description=(
        "CLI tool for GitLab merge request timelines: lifecycle events, "
        "phase durations, cycle time statistics and trends."
    ),
    author="GitLab MR Timeline Contributors",
    author_email="",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "black>=22.0",
            "flake8>=4.0",
            "mypy>=0.950",
        ],
    },
    entry_points={
        "console_scripts": [
            "gitlab-mr-timeline=mr_timeline.main:main",
        ],
    },
)
