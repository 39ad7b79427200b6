from setuptools import setup, find_packages

setup(
    name="medremind",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "celery",
        "redis",
        "sqlalchemy>=2.0",
        "psycopg2-binary",
        "pydantic>=2",
        "pydantic-settings",
        "python-dotenv",
        "prometheus-client",
        "firebase-admin",
    ],
    extras_require={
        "test": [
            "pytest",
            "fakeredis",
        ],
    },
)
