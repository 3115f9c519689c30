import setuptools


def long_description():
    with open('README.md', 'r') as file:
        return file.read()


setuptools.setup(
    name='store-zip',
    version='0.0.1',
    description='Python function to construct an uncompressed ZIP archive in memory from named byte payloads',
    long_description=long_description(),
    long_description_content_type='text/markdown',
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Topic :: System :: Archiving',
    ],
    python_requires='>=3.7.4',
    py_modules=[
        'store_zip',
    ],
    extras_require={
        'test': [
            'pytest',
            'stream-unzip',
        ],
    },
)
