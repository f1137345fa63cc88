"""Error taxonomy shared by probes, actions and the sequencer."""


class ConvergeError(Exception):
    """Base class for every error raised by hostconverge."""


class ProbeError(ConvergeError):
    """Inspection itself failed; the state of the resource is unknown."""


class ActionError(ConvergeError):
    """A corrective action failed; the resource may be half-converged."""


class CommandError(ActionError):
    """An external command exited non-zero or could not be started."""

    def __init__(self, cmd, returncode: int, output: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        pretty = " ".join(str(c) for c in self.cmd)
        msg = f"exited {returncode}: {pretty}"
        tail = output.strip().splitlines()[-1:] if output else []
        if tail:
            msg += f" ({tail[0]})"
        super().__init__(msg)


class PolicyViolation(ConvergeError):
    """A step, check or recovery pass was declared with invalid settings."""


class DeadlineExceeded(ConvergeError):
    """The per-run deadline elapsed before the run finished."""


class ConfigError(ConvergeError):
    """A configuration override could not be loaded."""
