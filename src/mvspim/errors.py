# errors.py - part of mvspim

## Copyright (C) 2025  mvspim developers
##
## This program is free software: you can redistribute it and/or
## modify it under the terms of the GNU General Public License as
## published by the Free Software Foundation, either version 3 of the
## License, or (at your option) any later version.
##
## This program is distributed in the hope that it will be useful, but
## WITHOUT ANY WARRANTY; without even the implied warranty of
## MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
## General Public License for more details.
##
## You should have received a copy of the GNU General Public License
## along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Exceptions raised by mvspim"""


class MvSpimError(Exception):
    """Base class for all mvspim exceptions"""
    pass


class NotEnoughDataPointsError(MvSpimError, ValueError):
    """Raised when a model is fitted to fewer matches than it requires"""
    pass


class IllDefinedDataPointsError(MvSpimError, ValueError):
    """Raised when matches do not determine a model, e.g., collinear points"""
    pass


class NoSuitablePointsError(MvSpimError, ValueError):
    """Raised when a set of points is unusable, e.g., too few for a local
    descriptor, or no bead that fits inside the volume"""
    pass


class ConfigurationError(MvSpimError, ValueError):
    """Raised for invalid or unknown configuration entries"""
    pass
