""" Failures that abort a connected component (or the whole run).

Pairwise estimation failures are not exceptions, see `RelativePoseResult.Failure`.
"""


class PoseGraphError(Exception):
    ...


class InputDegenerate(PoseGraphError):
    """ Too little data to optimize: empty component, too few poses, no residuals """


class InterchangeFileError(PoseGraphError):
    """ Pose graph text file could not be written, read or parsed """


class SolverNonConvergence(PoseGraphError):
    """ An iterative solver reported failure and the caller asked for that to be fatal """


class InvariantViolation(PoseGraphError):
    """ Internal consistency broken, the results can not be trusted """
