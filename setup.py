from pathlib import Path

from setuptools import setup, find_packages

here = Path(__file__).parent

setup(
    name='liveatc-client',
    version='1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=(here / 'requirements.txt').read_text().splitlines(),
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'liveatc-client = liveatc_client.__main__:main'
        ]
    },
    description='Plays the LiveATC.net stream of the closest airport on the tuned COM frequency, '
                'with desync delay and standby pre-buffering, using ffplay for audio output.',
    classifiers=[
        'Programming Language :: Python :: 3',
    ],
    python_requires='>=3.9',
)
