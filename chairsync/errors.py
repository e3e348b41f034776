class ChairSyncError(Exception):
    """Base class for all custom errors. The first argument, if any, is the
    reason. HTTPDatabase adds the full CouchDB error body as second argument.

    """
    status_code = 500
    error = 'unknown_error'

    @property
    def reason(self):
        return str(self.args[0]) if self.args else self.error


class BadRequest(ChairSyncError):
    """Malformed input, e.g. an invalid Mango selector."""

    status_code = 400
    error = 'bad_request'


class Unauthorized(ChairSyncError):
    """You need to log in."""

    status_code = 401
    error = 'unauthorized'


class Forbidden(ChairSyncError):
    """You are logged in, but not allowed to do this."""

    status_code = 403
    error = 'forbidden'


class NotFound(ChairSyncError):
    """Something (a document or database, probably) doesn't exist."""

    status_code = 404
    error = 'not_found'


class Conflict(ChairSyncError):
    """The revision you're trying to update is not the current one."""

    status_code = 409
    error = 'conflict'


class PreconditionFailed(ChairSyncError):
    """Wrong assumption, e.g. creating a database that already exists."""

    status_code = 412
    error = 'file_exists'


def error_for_status(status_code):
    for cls in (BadRequest, Unauthorized, Forbidden, NotFound, Conflict,
                PreconditionFailed):
        if cls.status_code == status_code:
            return cls
    return ChairSyncError
