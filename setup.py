from setuptools import setup

setup(
    name="ChatGateway",
    version="0.1.0",
    python_requires=">=3.11",
    py_modules=["api", "core", "init_db", "schemas"],
    packages=["extensions", "realtime", "utils"],
    install_requires=[
        "fastapi",
        "uvicorn",
        "asyncpg",
        "redis",
        "orjson",
        "colorama",
        "uvloop",
        "python-dotenv",
        "aiofiles",
        "websockets>=13",
        "python-statemachine>=2.1,<3",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
