__all__ = ("ImageCacheError", "WorkerStateError", "FetchAbortedError")


class ImageCacheError(Exception): ...


class WorkerStateError(ImageCacheError): ...


class FetchAbortedError(ImageCacheError): ...
