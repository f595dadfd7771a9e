from setuptools import setup, find_packages
setup(
    name="property_selection",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "beautifulsoup4",
        "fastapi",
        "httpx",
        "pydantic",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        'console_scripts': [
            'property_selection=property_selection.__main__:main'
        ]
    }
)
