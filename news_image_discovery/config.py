##########################################################################################
#
# Script name: config.py
#
# Description: Static configuration, strategy priors and region taxonomy for image discovery.
#
##########################################################################################

from dataclasses import dataclass, field
from pathlib import Path


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

SCHEMA_VERSION = 1
USER_AGENT = 'news-image-discovery-bot/1.0 (+https://github.com/)'
UNCLASSIFIED = 'unclassified'

FEED_EMBEDDED = 'feed-embedded'
META_TAG = 'meta-tag'
SEMANTIC_SELECTOR = 'semantic-selector'
BACKGROUND_IMAGE = 'background-image'
TEXT_PATTERN = 'text-pattern'
EXTERNAL_API = 'external-api'

# Priority order of the strategy chain. The external strategy always runs last.
STRATEGY_ORDER = [
    FEED_EMBEDDED,
    META_TAG,
    SEMANTIC_SELECTOR,
    BACKGROUND_IMAGE,
    TEXT_PATTERN,
    EXTERNAL_API,
]

STRATEGY_PRIORS = {
    FEED_EMBEDDED: 0.9,
    META_TAG: 0.85,
    SEMANTIC_SELECTOR: 0.7,
    BACKGROUND_IMAGE: 0.55,
    TEXT_PATTERN: 0.4,
    EXTERNAL_API: 0.8,
}

CORROBORATION_BOOST = 0.1

DEFAULT_TARGET_IMAGES = 5
DEFAULT_CONCURRENCY = 4
DEFAULT_RATE_LIMIT_SECONDS = 1.0
DEFAULT_MIN_CONFIDENCE = 0.3
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_BASE = 0.5
DEFAULT_BACKOFF_FACTOR = 2.0
# Google Custom Search free tier allows 100 queries per day.
DEFAULT_STRATEGY_BUDGETS = {EXTERNAL_API: 100}

GOOGLE_SEARCH_ENDPOINT = 'https://www.googleapis.com/customsearch/v1'

DEFAULT_REGION_TAXONOMY = {
    'african': [
        'african union',
        'ecowas',
        'sadc',
        'east african community',
        'african development bank',
        'nigeria',
        'south africa',
        'kenya',
        'ghana',
        'ethiopia',
        'morocco',
        'egypt',
        'senegal',
        'democratic republic congo',
        'rwanda',
        'uganda',
        'tanzania',
        'pan-african',
        'sahel',
        'africa',
    ],
    'caribbean': [
        'caricom',
        'caribbean',
        'jamaica',
        'barbados',
        'trinidad',
        'guyana',
        'haiti',
        'dominican republic',
        'puerto rico',
        'cuba',
        'bahamas',
        'west indies',
        'antilles',
        'martinique',
        'guadeloupe',
        'suriname',
        'belize',
        'grenada',
        'st lucia',
    ],
    'afro-latino': [
        'afro-latino',
        'afro-descendant',
        'afro-brazilian',
        'afro-colombian',
        'afro-venezuelan',
        'afro-peruvian',
        'afro-mexican',
        'afrodescendiente',
        'black latin america',
        'quilombo',
        'palenque',
        'garifuna',
        'movimento negro',
        'candomble',
    ],
    'middle-east': [
        'israel',
        'palestine',
        'iran',
        'saudi arabia',
        'syria',
        'iraq',
        'lebanon',
        'gulf cooperation council',
        'middle east',
        'arab league',
    ],
    'east-asia': [
        'china',
        'japan',
        'south korea',
        'north korea',
        'taiwan',
        'asean',
        'south china sea',
        'indo-pacific',
    ],
    'europe': [
        'european union',
        'nato',
        'russia',
        'ukraine',
        'germany',
        'france',
        'united kingdom',
        'brexit',
        'eurozone',
    ],
}


@dataclass
class PipelineConfig:
    output_root: Path = Path('output')
    target_images_per_article: int = DEFAULT_TARGET_IMAGES
    concurrency: int = DEFAULT_CONCURRENCY
    rate_limit_per_host: float = DEFAULT_RATE_LIMIT_SECONDS
    min_confidence: float = DEFAULT_MIN_CONFIDENCE
    enabled_strategies: set[str] = field(default_factory=lambda: set(STRATEGY_ORDER))
    region_taxonomy: dict[str, list[str]] = field(
        default_factory=lambda: {region: list(words) for region, words in DEFAULT_REGION_TAXONOMY.items()}
    )
    deadline: float | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    strategy_budgets: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_STRATEGY_BUDGETS))
    download_images: bool = True
    use_external_api: bool = False

    def validate(self) -> None:
        if self.target_images_per_article < 1:
            raise ValueError('target_images_per_article must be at least 1')
        if self.concurrency < 1:
            raise ValueError('concurrency must be at least 1')
        if self.rate_limit_per_host < 0:
            raise ValueError('rate_limit_per_host must not be negative')
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError('min_confidence must be within [0.0, 1.0]')
        if self.deadline is not None and self.deadline <= 0:
            raise ValueError('deadline must be positive')
        unknown = set(self.enabled_strategies) - set(STRATEGY_ORDER)
        if unknown:
            raise ValueError(f'Unknown strategies: {", ".join(sorted(unknown))}')
