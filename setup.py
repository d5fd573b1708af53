from setuptools import setup

description = 'WebSocket relay between an MCP host and a phone'

setup(
    name='phonepi-relay',
    version='0.1.0',
    description=description,
    long_description=description,
    author='PhonePi team',
    python_requires='>=3.10',
    packages=['phonepi', 'phonepi.service', 'phonepi.tools'],
    install_requires=[
        'click>=8,<9',
        'colorama<1',
        'mcp>=1.2,<2',
        'orjson>=3,<4',
        'structlog>=21',
        'uvloop<1',
        'websockets>=14',
        'PyYAML>=5',
    ],
    extras_require={
        'test': [
            'pytest>=7',
            'pytest-asyncio>=0.21',
            'pytest-mock>=3',
        ],
    },
    entry_points={
        'console_scripts': ['phonepi=phonepi.cli:cli'],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Natural Language :: English',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3.10',
    ],
    package_data={
        'phonepi': ['py.typed', 'catalog.yaml'],
    },
)
