# Copyright (C) 2026  The oatrepair Authors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# 
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
# 
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.


class RepairException(Exception):
    pass


class InvalidInput(RepairException):
    pass


class ExternalToolFailure(RepairException):
    pass


class DisassemblyFailed(ExternalToolFailure):
    def __init__(self, message, output=''):
        super().__init__(message)
        self.output = output


class CountMismatch(RepairException):
    def __init__(self, exported, repaired):
        super().__init__(
            '%d DEX files exported, although only %d repaired'
            % (exported, repaired))
        self.exported = exported
        self.repaired = repaired


RepairCountMismatch = CountMismatch


class ArchiveIOFailure(RepairException):
    pass


class SignalInterrupt(RepairException):
    def __init__(self, signum):
        super().__init__('Interrupted by signal %d' % signum)
        self.signum = signum
