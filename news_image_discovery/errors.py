##########################################################################################
#
# Script name: errors.py
#
# Description: Exception taxonomy for fetch, extraction, storage and deadline failures.
#
##########################################################################################


# ****************************************************************************************
# Exceptions
# ****************************************************************************************


class PipelineError(Exception):
    '''
    Base class for exceptions in this package.
    '''


class FetchError(PipelineError):
    TIMEOUT = 'timeout'
    HTTP_ERROR = 'http_error'
    ALL_VARIANTS_EXHAUSTED = 'all_variants_exhausted'

    def __init__(self, kind: str, url: str, status: int | None = None, detail: str = ''):
        self.kind = kind
        self.url = url
        self.status = status
        self.message = f'Failed to fetch URL ({kind}): {url}'
        if status is not None:
            self.message += f' [HTTP {status}]'
        if detail:
            self.message += f' - {detail}'
        super().__init__(self.message)


class ExtractionError(PipelineError):
    '''
    Strategy-local parse failure. Never fatal for the article.
    '''

    def __init__(self, strategy: str, message: str):
        self.strategy = strategy
        self.message = f'{strategy}: {message}'
        super().__init__(self.message)


class StoreError(PipelineError):
    IO_FAILURE = 'io_failure'
    SERIALIZATION_FAILURE = 'serialization_failure'

    def __init__(self, kind: str, path: str, detail: str = ''):
        self.kind = kind
        self.path = path
        self.message = f'Metadata store {kind} for {path}'
        if detail:
            self.message += f': {detail}'
        super().__init__(self.message)


class DeadlineExceeded(PipelineError):
    kind = 'deadline_exceeded'

    def __init__(self, stage: str = ''):
        self.stage = stage
        self.message = f'Batch deadline exceeded during {stage or "processing"}'
        super().__init__(self.message)
