"""Domain errors raised during a SolrCloud reconciliation pass."""


class SolrOperatorError(RuntimeError):
    """Base class for operator failures."""


class ConfigurationError(SolrOperatorError):
    """The SolrCloud spec (or something it references) is invalid.

    Fatal for the pass: it reproduces until the user fixes the spec.
    """


class ZookeeperError(SolrOperatorError):
    """Reading or writing the ZooKeeper ensemble failed."""
