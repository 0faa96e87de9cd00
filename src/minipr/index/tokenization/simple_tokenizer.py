import re
from typing import Callable, Iterable, Optional

from .analysis import TokenizerAbstract, TokenizerConfig, fold_ascii, join_thousands, simple_stem, strip_possessive
from .stopwords import get_default_stopwords


class SimpleTokenizer(TokenizerAbstract):
    """
    Regex word tokenizer followed by a chain of term normalizers.

    A word is a run of letters and digits, optionally followed by an
    apostrophe part. Digit groups separated by commas ("1,000") stay one word.

    Examples (default config):
    - "Obama's speeches" -> ["obama", "speech"]
    - "1,000 random walks" -> ["1000", "random", "walk"]
    """

    _word_re = re.compile(r"\d{1,3}(?:,\d{3})+|[A-Za-z0-9]+(?:'[A-Za-z0-9]+)?")

    def __init__(
        self,
        config: Optional[TokenizerConfig] = None,
        stopwords: Optional[Iterable[str]] = None,
    ):
        self.config = config if config is not None else TokenizerConfig()
        if not self.config.remove_stopwords:
            self.stopwords = frozenset()
        elif stopwords is not None:
            self.stopwords = frozenset(stopwords)
        else:
            self.stopwords = get_default_stopwords()
        self._normalizers = self._build_normalizers()

    def _build_normalizers(self) -> list[Callable[[str], str]]:
        steps: list[Callable[[str], str]] = []
        if self.config.lowercase:
            steps.append(str.lower)
        if self.config.ascii_fold:
            steps.append(fold_ascii)
        steps.append(strip_possessive)
        if self.config.number_normalize:
            steps.append(join_thousands)
        return steps

    def normalize(self, word: str) -> str:
        for step in self._normalizers:
            word = step(word)
        return word

    def tokenize(self, text: str) -> list[str]:
        if not text:
            return []
        terms = []
        for word in self._word_re.findall(text):
            term = self.normalize(word)
            # Stopwords are matched before stemming.
            if not term or term in self.stopwords:
                continue
            if self.config.stemming:
                term = simple_stem(term)
            if len(term) >= self.config.min_len:
                terms.append(term)
        return terms
