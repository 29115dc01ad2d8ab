from setuptools import find_packages, setup

setup(
    name='serialchat',
    version='1.0.0',
    description='HTTP/SSE <-> Serial chat relay daemon for serial-attached boards',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.12',
    install_requires=[
        'fastapi',
        'starlette',
        'uvicorn',
        'python-multipart',
        'msgspec',
        'tenacity',
        'transitions',
        'pyserial',
        'pyserial-asyncio-fast',
        'prometheus-client',
        'uvloop',
    ],
    extras_require={
        'tests': [
            'pytest',
            'pytest-asyncio',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'serialchat=serialchat.daemon:main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
)
