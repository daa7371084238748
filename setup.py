#!/usr/bin/env python

import setuptools

install_requires = [
    'numpy>=1.22.0',
    'scipy>=1.8.0',
    'nibabel>=3.2.0',
    'dipy>=1.7.0',
    'torch>=1.10.0',
    'tqdm>=4.62.0',
    'psutil>=5.8.0'
]

setuptools.setup(
    name='UKFpy',
    version='1.0.0',
    description='Multi-compartment Unscented Kalman Filter tractography for diffusion MRI',
    license='BSD (3-Clause)',
    packages=setuptools.find_packages(include=("ukfpy", "ukfpy.*"), exclude=("ukfpy.tests*",)),
    install_requires=install_requires,
    extras_require={
        'test': ['pytest>=7.0'],
    },
    python_requires='>=3.9',
    package_data={
        'ukfpy': [
            'configs/*.ini',
        ]
    },
    entry_points={
        'console_scripts': ['UKFpy=ukfpy.master_cli:main'],
    },
    include_package_data=True,
    zip_safe=False,
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: BSD License',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Medical Science Apps.',
    ],
)
