from setuptools import setup, find_packages

setup(
    name="goog-cli",
    version="0.1.0",
    description="Multi-account Google OAuth2 credentials from the command line",
    python_requires=">=3.9",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        'google-auth>=2.22.0',
        'google-auth-oauthlib>=1.0.0',
        'google-api-python-client>=2.0.0',
        'pydantic>=2.0.0',
        'pydantic-settings>=2.0.0',
        'typer>=0.9.0',
        'rich>=13.0.0',
        'python-dotenv>=1.0.0',
        'aiohttp>=3.8.0',
        'cryptography>=41.0.0',
        'keyring>=24.0.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0.0',
            'pytest-asyncio>=0.21.0',
            'pytest-mock>=3.10.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'goog=goog.cli:main',
        ],
    },
)
