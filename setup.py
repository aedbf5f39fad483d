from setuptools import setup


setup(
    name="captable-io",
    version="0.1.0",
    description="Import/export mapping and transformation engine for cap-table spreadsheets and CSV files",
    packages=["captable_io"],
    python_requires=">=3.9",
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "requests",
    ],
    extras_require={
        "excel-legacy": ["xlrd"],
        "all": ["xlrd"],
    },
    entry_points={
        "console_scripts": [
            "captable-io=captable_io.cli:main",
        ]
    },
)
