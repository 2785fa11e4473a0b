"""Pure security guards: paths, filenames, content signatures and error rendering."""

from mediavault.security.problem_details import problem_response

__all__ = ["problem_response"]
