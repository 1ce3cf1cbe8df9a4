from functools import wraps
from flask import abort
from flask_jwt_extended import verify_jwt_in_request
from pgben.services.policy import has_permissions


def require_permissions(*codes: str):
    """Require every code; a code written as 'a.b,c.d' is satisfied by either alternative."""
    def outer(fn):
        fn.required_permissions = codes

        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            if not has_permissions(*codes):
                abort(403, description='Missing permission')
            return fn(*args, **kwargs)
        return wrapper
    return outer
