import setuptools

setuptools.setup(
    name="ekep",
    version="0.1.0",
    description="EKEP is a mutually authenticated key exchange handshake",
    package_dir={"": "src"},
    packages=setuptools.find_packages("src"),
    python_requires=">=3.8",
    install_requires=[
        "certifi",
        "cryptography>=42.0.0",
        "pyOpenSSL>=24",
        "service_identity>=24.1.0",
    ],
    extras_require={
        "dev": ["pytest"],
    },
)
