#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A setuptools based setup module.
See:
https://packaging.python.org/en/latest/distributing.html
https://github.com/pypa/sampleproject
"""


# Always prefer setuptools over distutils
from setuptools import setup
# To use a consistent encoding
from codecs import open
from os import path

__version__ = "1.0.0"

description = "A Python package, server and CLI for logging browser " \
              "reports, SMTP TLS reports and DMARC aggregate reports"

here = path.abspath(path.dirname(__file__))

# Get the long description from the README file
with open(path.join(here, 'README.rst'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='netjournal',

    version=__version__,

    description=description,
    long_description=long_description,

    license='Apache 2.0',

    # See https://pypi.python.org/pypi?%3Aaction=list_classifiers
    classifiers=[
        'Development Status :: 4 - Beta',

        'Intended Audience :: Developers',
        "Intended Audience :: Information Technology",
        'Operating System :: OS Independent',
        'Framework :: FastAPI',

        'License :: OSI Approved :: Apache Software License',

        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],

    keywords='CSP, NEL, Reporting API, DMARC, TLS-RPT, logging',

    packages=["netjournal", "netjournal.mail"],

    python_requires='>=3.9',

    install_requires=['expiringdict>=1.1.4',
                      'xmltodict>=0.12.0',
                      'lxml>=4.4.0',
                      'requests>=2.22.0',
                      'imapclient>=2.1.0',
                      'mailsuite>=1.6.1',
                      'mail-parser>=3.15.0',
                      'python-dateutil>=2.8.0',
                      'fastapi>=0.100.0',
                      'uvicorn>=0.23.0',
                      'ua-parser>=1.0.0',
                      'PyYAML>=6.0',
                      ],

    extras_require={
        'test': ['pytest>=7.0.0', 'httpx>=0.24.0'],
    },

    entry_points={
        'console_scripts': ['netjournal=netjournal.cli:_main'],
    }
)
