from setuptools import setup

test_requires = [
    'pytest>=7.4.0',
    'hypothesis>=6.88.0',
]

setup(
    name='phase-harness',
    version='1.0.0',
    description='Concurrent result publishing and inter-phase legacy store for distributed test runs',
    py_modules=[
        'file_lock',
        'harness_config',
        'harness_errors',
        'phase_legacy',
        'result_document',
        'result_publisher',
        'results_stage',
        'status_vocabulary',
    ],
    python_requires='>=3.9',
    install_requires=[
        'PyYAML>=6.0',
        'jsonschema>=4.19.0',
    ],
    extras_require={
        'test': test_requires,
        'dev': test_requires + [
            'mypy>=1.5.0',
            'types-PyYAML>=6.0.0',
            'types-jsonschema>=4.19.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'phase-harness=results_stage:main',
        ],
    },
)
