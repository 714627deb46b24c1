"""Build colormatch package."""
import setuptools

with open('README.md') as f:
    long_desc = f.read()

setuptools.setup(
    name='colormatch',
    version='0.1.0',
    description=(
        'Peer-to-peer WebRTC sessions signaled through a public '
        'key-value relay'
    ),
    long_description=long_desc,
    long_description_content_type='text/markdown',
    packages=setuptools.find_packages(include=['colormatch', 'colormatch.*']),
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.10',
    install_requires=[
        'aiohttp>=3.9',
        'aiortc>=1.5',
        'click',
        'pydantic>=2',
        'tomli ; python_version<"3.11"',
        'tomli-w',
        'typing-extensions>=4.3.0 ; python_version<"3.11"',
    ],
    extras_require={
        'dev': [
            'coverage[toml]',
            'pytest',
            'pytest-asyncio>=0.23',
            'pytest-cov',
        ],
    },
    entry_points={
        'console_scripts': [
            'colormatch-peer=colormatch.p2p.run:cli',
        ],
    },
)
