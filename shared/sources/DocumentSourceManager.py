from shared.helper.HelperConfig import HelperConfig
from shared.sources.DocumentSourceInterface import DocumentSourceInterface

class DocumentSourceManager:
    """
    Manager class to handle the document source based on configuration.
    """

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.source = self._initialize_source()

    def _get_engine_from_env(self) -> str:
        """
        Reads the source engine from ENV configuration.

        Returns:
            str: The name of the source engine.

        Raises:
            ValueError: If no source engine is specified in the configuration.
        """
        engine = self.helper_config.get_string_val("SOURCE_ENGINE", default="directory")
        if not engine:
            raise ValueError("No source engine specified in configuration.")

        #lowercase all and uppcercase first letter for better comparison and display
        engine = engine.strip().lower()
        engine = engine.capitalize()
        return engine

    def _initialize_source(self) -> DocumentSourceInterface:
        """
        Initializes the document source based on the engine specified in the configuration.

        Returns:
            DocumentSourceInterface: An instance of the source that implements the DocumentSourceInterface.

        Raises:
            ValueError: If the specified engine has no source implementation.
        """
        engine = self._get_engine_from_env()
        className = f"DocumentSource{engine}"
        # try to import the class from shared.sources.{engine}
        try:
            module = __import__(
                f"shared.sources.{engine.lower()}.{className}",
                fromlist=[className],
            )
            source_class = getattr(module, className)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Unsupported source engine specified: '{engine}'. Error: {e}")
        source = source_class(helper_config=self.helper_config)
        self.logging.debug(f"Instantiated document source for engine: {engine}")
        return source

    def get_source(self) -> DocumentSourceInterface:
        """
        Returns the instantiated document source.

        Returns:
            DocumentSourceInterface: The source instance.
        """
        return self.source
