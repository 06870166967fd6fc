"""
Packaging for the TryCP connector.

The tests sit beside the modules they test, in *_test.py files. Run them with

    pip install -e .[test]
    pytest src
"""

from setuptools import setup


setup(
    name='trycp-connector-py',
    version='0.0.1',
    description='Drives conductors on remote TryCP servers, for testing distributed apps.',
    url='',
    author='',
    author_email='',
    license='LGPL',
    package_dir={'': 'src'},
    packages=['trycp', 'trycp.conduit', 'trycp.config', 'trycp.connector',
              'trycp.protocol', 'trycp.support'],
    package_data={'trycp.config': ['*.cfg']},
    python_requires='>=3.8',
    install_requires=[
        'cbor2>=5.4',
        'configobj>=5.0.8',
        'cryptography>=3.1',
    ],
    extras_require={
        'test': [
            'PyHamcrest>=2.0',
            'pytest>=7',
            'timeout-decorator>=0.5',
        ],
    },
    zip_safe=False,
)
