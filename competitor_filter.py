"""
Domain exclusion rules for competitor URLs
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from utils import normalize_domain

logger = logging.getLogger(__name__)

# Never useful as article competitors
GLOBAL_EXCLUDED_DOMAINS = [
    'wikipedia.org',
    'wikipedia.com',
    'twitter.com',
    'x.com',
    'facebook.com',
    'instagram.com',
    'linkedin.com',
    'tiktok.com',
    'pinterest.com',
    'youtube.com',
    'youtu.be',
    'vimeo.com',
    'dailymotion.com',
    'google.com',
    'google.co.jp',
    'bing.com',
    'yahoo.com',
    'imgur.com',
    'flickr.com',
]

# Large marketplaces; excluded unless the caller opts back in
DEFAULT_EXCLUDED_DOMAINS = [
    'amazon.co.jp',
    'amazon.com',
    'rakuten.co.jp',
    'rakuten.com',
    'yahoo.co.jp',
]


def is_domain_excluded(domain: str, excluded_domains: List[str]) -> bool:
    """Exact match or any parent domain match (shop.amazon.co.jp -> amazon.co.jp)"""
    parts = domain.lower().split('.')
    return any('.'.join(parts[i:]) in excluded_domains for i in range(len(parts)))


def is_own_site(competitor_url: str, own_site_url: Optional[str]) -> bool:
    """Same registrable site, counting subdomains in either direction"""
    if not own_site_url:
        return False
    competitor = normalize_domain(competitor_url)
    own = normalize_domain(own_site_url.replace("sc-domain:", ""))
    if not competitor or not own:
        return False
    return competitor == own or competitor.endswith('.' + own) or own.endswith('.' + competitor)


@dataclass
class ExcludedUrl:
    url: str
    reason: str  # 'global' | 'default' | 'custom' | 'own_site'
    domain: str


@dataclass
class CompetitorFilter:
    use_global_exclusion: bool = True
    use_default_exclusion: bool = True
    own_site_url: Optional[str] = None
    custom_excluded_domains: List[str] = field(default_factory=list)

    def exclusion_reason(self, url: str) -> Optional[str]:
        domain = normalize_domain(url)
        if self.use_global_exclusion and is_domain_excluded(domain, GLOBAL_EXCLUDED_DOMAINS):
            return 'global'
        if self.use_default_exclusion and is_domain_excluded(domain, DEFAULT_EXCLUDED_DOMAINS):
            return 'default'
        custom = [normalize_domain(d) for d in self.custom_excluded_domains]
        if custom and is_domain_excluded(domain, custom):
            return 'custom'
        if is_own_site(url, self.own_site_url):
            return 'own_site'
        return None

    def filter_urls(self, urls: List[str]) -> Tuple[List[str], List[ExcludedUrl]]:
        """Split URLs into kept (input order preserved) and excluded"""
        kept, excluded = [], []
        for url in urls:
            reason = self.exclusion_reason(url)
            if reason is None:
                kept.append(url)
            else:
                excluded.append(ExcludedUrl(url=url, reason=reason, domain=normalize_domain(url)))
        if excluded:
            logger.info(f"Excluded {len(excluded)} of {len(urls)} competitor URLs")
        return kept, excluded
