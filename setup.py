from setuptools import setup

setup(name='casclient.py',
      version='1.0.0',
      description='CAS 2.0/3.0 ticket validation client library',
      python_requires='>=3.6',
      py_modules=['casclient'],
      install_requires=['requests >= 2.18.0'],
      extras_require={
          'test': ['pytest >= 7.0', 'requests-mock >= 1.9'],
      },
     )
