"""
Tokenization shared by the baseline index and the text graph generators.

Both must see the same terms: salience edges look up the idf of the terms
the index was built from.
"""

from typing import Optional

from minipr.utils.config import Config

from .analysis import TokenizerAbstract, TokenizerConfig
from .simple_tokenizer import SimpleTokenizer

__all__ = ["SimpleTokenizer", "TokenizerAbstract", "TokenizerConfig", "get_tokenizer"]


def get_tokenizer(cfg: Optional[Config] = None) -> TokenizerAbstract:
    """Tokenizer for the `TOKENIZER` section of `cfg`, base.yaml when omitted."""
    return SimpleTokenizer(TokenizerConfig.from_config(cfg if cfg is not None else Config()))
