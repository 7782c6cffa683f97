##########################################################################################
#
# Script name: pipeline.py
#
# Description: Orchestrates fetch, extraction, dedupe, classification and persistence
#              for a batch of articles on a bounded worker pool.
#
##########################################################################################

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

import requests

from .classifier import classify
from .config import SCHEMA_VERSION, PipelineConfig
from .dedupe import dedupe_candidates
from .errors import DeadlineExceeded, FetchError, StoreError
from .fetcher import Fetcher, build_session
from .images import download_images
from .models import (
    ArticleDescriptor,
    ArticleOutcome,
    BatchReport,
    DedupedImage,
    MetadataRecord,
    Stage,
)
from .ratelimit import HostRateLimiter
from .store import MetadataStore
from .strategies import StrategyBudget, StrategyChain, build_strategies
from .utils import article_hash, utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

INTERRUPTIBLE_STAGES = (Stage.PENDING, Stage.FETCHING, Stage.EXTRACTING)


# ****************************************************************************************
# Classes
# ****************************************************************************************


@dataclass
class PipelineContext:
    '''
    Everything shared between article jobs of one batch run.

    Created per batch and discarded when the batch completes.
    '''

    config: PipelineConfig
    session: requests.Session
    rate_limiter: HostRateLimiter
    budget: StrategyBudget
    store: MetadataStore
    deadline_at: float | None = None
    clock: Callable[[], float] = field(default=time.monotonic)

    @classmethod
    def create(
        cls,
        config: PipelineConfig,
        session: requests.Session | None = None,
        store: MetadataStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> 'PipelineContext':
        deadline_at = None
        if config.deadline is not None:
            deadline_at = clock() + config.deadline
        return cls(
            config=config,
            session=session or build_session(),
            rate_limiter=HostRateLimiter(config.rate_limit_per_host, clock=clock, sleep=sleep),
            budget=StrategyBudget(config.strategy_budgets),
            store=store or MetadataStore(config.output_root),
            deadline_at=deadline_at,
            clock=clock,
        )

    def deadline_passed(self) -> bool:
        return self.deadline_at is not None and self.clock() >= self.deadline_at


class _ArticleJob:
    def __init__(self, pipeline: 'ImagePipeline', descriptor: ArticleDescriptor) -> None:
        self.pipeline = pipeline
        self.context = pipeline.context
        self.descriptor = descriptor
        self.stage = Stage.PENDING
        self.strategy_counts: dict[str, int] = {}

    def _advance(self, stage: Stage) -> None:
        log.debug('%s -> %s', self.descriptor.url, stage.value)
        self.stage = stage

    def _checkpoint(self) -> None:
        if self.stage in INTERRUPTIBLE_STAGES and self.context.deadline_passed():
            raise DeadlineExceeded(self.stage.value)

    def _fail(self, reason: str) -> ArticleOutcome:
        log.warning('Article failed at %s (%s): %s', self.stage.value, reason, self.descriptor.url)
        return ArticleOutcome(url=self.descriptor.url, status='failed', stage=self.stage, reason=reason)

    def _store_images(self, images: list[DedupedImage], region_id: str) -> list[DedupedImage]:
        config = self.context.config
        if not config.download_images or not images:
            return images
        return download_images(
            images,
            root=config.output_root,
            region_id=region_id,
            article_key=article_hash(self.descriptor.url),
            session=self.context.session,
            rate_limiter=self.context.rate_limiter,
            timeout=config.request_timeout,
            deadline_at=self.context.deadline_at,
        )

    def run(self) -> ArticleOutcome:
        config = self.context.config
        try:
            self._checkpoint()
            self._advance(Stage.FETCHING)
            self._checkpoint()
            fetch_result = self.pipeline.fetcher.fetch(self.descriptor, deadline_at=self.context.deadline_at)

            self._advance(Stage.EXTRACTING)
            chain_result = self.pipeline.chain.run(
                fetch_result,
                self.descriptor,
                checkpoint=self._checkpoint,
                deadline_at=self.context.deadline_at,
            )
            self._checkpoint()
            self.strategy_counts = dict(chain_result.strategy_counts)

            self._advance(Stage.DEDUPLICATING)
            images = dedupe_candidates(chain_result.candidates, min_confidence=config.min_confidence)

            self._advance(Stage.CLASSIFYING)
            region_tags = classify(self.descriptor, chain_result.candidates, config.region_taxonomy)

            images = self._store_images(images, region_tags[0].region_id)
            record = MetadataRecord(
                article_url=self.descriptor.url,
                title=self.descriptor.title,
                images=tuple(images),
                region_tags=tuple(region_tags),
                strategy_success_counts=self.strategy_counts,
                created_at=utc_now(),
                schema_version=SCHEMA_VERSION,
            )
            record_id = self.context.store.append(record)
        except FetchError as exc:
            return self._fail(exc.kind)
        except DeadlineExceeded as exc:
            return self._fail(exc.kind)
        except StoreError as exc:
            log.error('Metadata store failure for %s: %s', self.descriptor.url, exc)
            return self._fail(exc.kind)
        except Exception as exc:  # noqa: BLE001
            log.exception('Unexpected failure processing %s: %s', self.descriptor.url, exc)
            return self._fail(f'unexpected_error: {exc}')

        self._advance(Stage.PERSISTED)
        log.info('Persisted %d image(s) for %s', len(images), self.descriptor.url)
        return ArticleOutcome(
            url=self.descriptor.url,
            status='persisted',
            stage=Stage.PERSISTED,
            record_id=record_id,
            image_count=len(images),
        )


class ImagePipeline:
    def __init__(
        self,
        config: PipelineConfig,
        context: PipelineContext | None = None,
        fetcher: Fetcher | None = None,
        chain: StrategyChain | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        config.validate()
        self.config = config
        self.context = context or PipelineContext.create(config, sleep=sleep)
        self.fetcher = fetcher or Fetcher(
            session=self.context.session,
            rate_limiter=self.context.rate_limiter,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_factor=config.backoff_factor,
            clock=self.context.clock,
            sleep=sleep,
        )
        self.chain = chain or StrategyChain(
            build_strategies(
                config,
                session=self.context.session,
                rate_limiter=self.context.rate_limiter,
                clock=self.context.clock,
            ),
            target_count=config.target_images_per_article,
            budget=self.context.budget,
        )
        log.debug('Strategy chain: %s', ', '.join(self.chain.names))

    def process(self, descriptor: ArticleDescriptor) -> tuple[ArticleOutcome, dict[str, int]]:
        job = _ArticleJob(self, descriptor)
        outcome = job.run()
        return outcome, job.strategy_counts

    def run_batch(self, descriptors: list[ArticleDescriptor]) -> BatchReport:
        start = time.perf_counter()
        report = BatchReport(attempted=len(descriptors))
        if not descriptors:
            return report

        workers = max(1, min(self.config.concurrency, len(descriptors)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='article') as executor:
            futures = [executor.submit(self.process, descriptor) for descriptor in descriptors]
            results = [future.result() for future in futures]

        for outcome, strategy_counts in results:
            report.outcomes.append(outcome)
            if outcome.succeeded:
                report.succeeded += 1
            else:
                report.failed += 1
            for name, count in strategy_counts.items():
                if count > 0:
                    report.per_strategy_success_counts[name] = report.per_strategy_success_counts.get(name, 0) + 1
        report.elapsed_seconds = time.perf_counter() - start
        log.info(
            'Batch finished in %.2fs (%d/%d succeeded, %d failed)',
            report.elapsed_seconds,
            report.succeeded,
            report.attempted,
            report.failed,
        )
        return report


def run_batch(
    descriptors: list[ArticleDescriptor],
    config: PipelineConfig | None = None,
    session: requests.Session | None = None,
) -> BatchReport:
    config = config or PipelineConfig()
    context = PipelineContext.create(config, session=session)
    pipeline = ImagePipeline(config, context=context)
    return pipeline.run_batch(descriptors)
