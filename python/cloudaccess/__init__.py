# This file is part of cloudaccess.
#
# Developed for the LSST Data Management System.
# This product includes software developed by the LSST Project
# (https://www.lsst.org).
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Uniform access to files and folders stored by webDAV servers or in a
local directory.
"""

from .api import *
from .dav import *
from .davutils import WebDavCredential
from .exceptions import *
from .localfs import *
