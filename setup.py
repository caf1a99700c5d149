from setuptools import setup

setup(
    name='houghforest',
    version='1.0',
    py_modules=[
        'binary_stream',
        'forest_options',
        'hough_forest',
        'hough_split_search',
        'training_data',
        'tree_builder',
    ],
    description='Hough forests: randomized trees that classify patches and cast Hough votes',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    python_requires='>=3.9',
    install_requires=[
        'numpy',
        'joblib',
    ],
    extras_require={
        'test': ['pytest'],
    },
)
