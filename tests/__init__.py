#! /usr/bin/env python3

import warnings

# Widespread distutils warning that create noise during tests and would prevent
# treating warnings as errors.
warnings.filterwarnings(
    action='ignore',
    message=r'.*distutils Version classes are deprecated.*',
    category=DeprecationWarning,
)
