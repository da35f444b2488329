from importlib import import_module
from setuptools import setup

with open('README.rst') as f:
    readme = f.read()

setup(
    name='fcasm',
    version=import_module('fcasm').__version__,
    description='Assembler for the FCVM fantasy console instruction set',
    long_description=readme,
    long_description_content_type='text/x-rst',
    packages=['fcasm'],
    include_package_data=True,
    extras_require={
        'test': [
            'pytest',
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Intended Audience :: Developers',
        'Operating System :: OS Independent',
        'Programming Language :: Assembly',
        'Programming Language :: Python :: 3',
        'Topic :: Software Development',
        'Topic :: Software Development :: Assemblers',
    ],
    python_requires='>=3.6',
    entry_points={
        'console_scripts': [
            'fcasm = fcasm.asm:cli_main',
        ],
    },
)
