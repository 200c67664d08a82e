"""
Exceptions raised while classifying and applying transforms to points. All
messages carry the offending path or method token.
"""


class CoordMapError(Exception):
    pass 


class ShapeError(CoordMapError, ValueError):
    """Point array is not 3xN or 4xN"""
    pass 


class FormatError(CoordMapError):
    """Transform content is unrecognised or malformed"""
    pass 


class UnsupportedMethodError(FormatError):
    """Method hint is not valid for the given artifact"""
    pass 


class NotFoundError(CoordMapError, FileNotFoundError):
    """An expected sibling artifact does not exist"""
    pass 


class UnsupportedFormatError(CoordMapError):
    """Path does not follow any known naming convention"""
    
    def __init__(self, path):
        self.path = path 
        CoordMapError.__init__(self, 
            "Unsupported transformation file: %s" % path)


class MissingMethodError(CoordMapError):
    """Artifact is ambiguous and no method hint was given"""
    pass 


class EngineCallError(CoordMapError):
    """Failure reported by an external registration engine"""
    pass 
