from setuptools import setup, find_packages

setup(
    name='vtwatch',
    version='0.1.0',
    description='Watched-folder triage that routes files by VirusTotal verdict',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    install_requires=[
        'requests',      # For API calls
        'watchdog',      # For monitoring file system changes
        'python-dotenv', # For environment configuration
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'vtwatch=vtwatch.cli:main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
