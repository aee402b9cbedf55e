from setuptools import setup, find_packages

setup(
    name='clusterreg',
    version='0.1.0',
    packages=find_packages(exclude=['*.tests', '*.tests.*']),
    include_package_data=True,
    install_requires=[
        'typer[all]>=0.16,<0.26',
        'click>=8.0,<8.3',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'pydantic>=2',
        'python-dotenv',
        'pyyaml',
        'jsonschema'
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx'
        ]
    },
    entry_points={
        'console_scripts': [
            'clusterreg=clusterreg.cli:run'
        ]
    },
    author='Your Name',
    description='Registry of GitOps deployment target clusters stored as Kubernetes secrets',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
