class VidgifError(Exception):
    """Base class for conversion and job errors."""


class EngineUnavailable(VidgifError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(
            "ffmpeg not found or unavailable. Install ffmpeg and try again.\n"
            f"Details: {detail}"
        )


class InputNotFound(VidgifError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Input file not found: {path}")


class OutputExists(VidgifError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Output file already exists: {path}\nUse --overwrite to replace it.")


class EngineExecutionError(VidgifError):
    """ffmpeg ran but exited with a nonzero status."""

    def __init__(self, command: str, output: str, returncode: int | None = None):
        self.command = command
        self.output = output
        self.returncode = returncode
        lines = ["ffmpeg failed.", "", f"Command: {command}"]
        if output:
            lines += ["", "Output:", output]
        super().__init__("\n".join(lines))


class JobNotFound(VidgifError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobNotReady(VidgifError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not finished yet: {job_id}")


class JobFailed(VidgifError):
    def __init__(self, job_id: str, message: str | None):
        self.job_id = job_id
        self.message = message or "conversion failed"
        super().__init__(self.message)
