from pathlib import Path

from setuptools import find_packages, setup  # isort: skip


HERE = Path(__file__).resolve().parent


def load_long_description():
    readme = HERE / "README.md"
    if readme.exists():
        return readme.read_text(encoding="utf-8")
    return ""


setup(
    name="llmtrail",
    version="0.1.0",
    description="Client-side tracing of AI model calls, grouped into interactions, with feedback signals",
    long_description=load_long_description(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*"]),
    package_data={
        "llmtrail": ["py.typed"],
    },
    zip_safe=False,
    python_requires=">=3.9",
    install_requires=[
        "attrs>=20",
        "envier~=0.5",
        "wrapt>=1.14",
    ],
    extras_require={
        "tests": [
            "mock",
            "pytest",
            "pytest-asyncio",
        ],
    },
)
