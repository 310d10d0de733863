"""Services package - tournament core and its collaborators."""
