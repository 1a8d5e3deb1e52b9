from setuptools import setup, find_packages


setup(
    name='siftmatch',
    version='1.0.0',
    description='SIFT feature extraction, descriptor matching and two view geometric verification',
    packages=find_packages(include=['siftmatch', 'siftmatch.*']),
    python_requires='>=3.10',
    install_requires=[
        'numpy',
        'scipy',
        'opencv-python',
        'tqdm',
    ],
    extras_require={
        'gpu': ['torch'],
        'test': ['pytest', 'torch'],
    },
    entry_points={
        'console_scripts': [
            'siftmatch-match-pair=siftmatch.scripts.match_image_pair:main',
        ],
    },
)
