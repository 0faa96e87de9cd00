from functools import lru_cache

# English stop set of the Lucene StandardAnalyzer, extended with a few
# high-frequency function words that carry no salience signal.
_ENGLISH_STOPWORDS = """
a an and are as at be but by for if in into is it no not of on or such that the
their then there these they this to was will with
about above after again all am any because been before being below between both
can did do does doing down during each few from further had has have having he
her here hers herself him himself his how i its itself just me more most my
myself nor now off once only other our ours ourselves out over own same she
should so some than theirs them themselves those through too under until up
very we were what when where which while who whom why would you your yours
yourself yourselves
""".split()


@lru_cache(maxsize=1)
def get_default_stopwords() -> frozenset[str]:
    return frozenset(_ENGLISH_STOPWORDS)
