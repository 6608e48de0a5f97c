from setuptools import setup, find_packages

setup(name='petgtm', version='0.1.0', packages=find_packages(include=['petgtm', 'petgtm.*']),
      python_requires='>=3.10',
      install_requires=['numpy', 'scipy', 'pandas', 'nibabel'],
      extras_require={'test': ['pytest']},
      entry_points={'console_scripts': ['petgtm-gtm = petgtm.cli.cli_gtm:main'], }, )
