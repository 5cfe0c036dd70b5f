import logging
import unittest

from pydantic import ValidationError

from mapper_settings import MapperSettings, configure_logging


class TestMapperSettings(unittest.TestCase):
    def test_defaults(self):
        settings = MapperSettings.from_env({})
        self.assertEqual(settings.store_type, "memory")
        self.assertEqual(settings.mongo_uri, "mongodb://localhost:27017/")
        self.assertEqual(settings.database_name, "docproxy")
        self.assertEqual(settings.collection_name, "records")
        self.assertEqual(settings.server_selection_timeout_ms, 5000)

    def test_from_env(self):
        settings = MapperSettings.from_env({
            "DOCPROXY_STORE": "mongo",
            "MONGO_URI": "mongodb://db.internal:27017/",
            "MONGO_DATABASE": "library",
            "MONGO_COLLECTION": "books",
            "MONGO_TIMEOUT_MS": "250",
            "DOCPROXY_LOG_LEVEL": "debug",
        })
        self.assertEqual(settings.store_type, "mongo")
        self.assertEqual(settings.mongo_uri, "mongodb://db.internal:27017/")
        self.assertEqual(settings.database_name, "library")
        self.assertEqual(settings.collection_name, "books")
        self.assertEqual(settings.server_selection_timeout_ms, 250)
        self.assertEqual(settings.log_level, "debug")

    def test_empty_env_values_fall_back_to_defaults(self):
        self.assertEqual(MapperSettings.from_env({"MONGO_DATABASE": ""}).database_name, "docproxy")

    def test_invalid_values(self):
        with self.assertRaises(ValidationError):
            MapperSettings.from_env({"DOCPROXY_STORE": "sqlite"})
        with self.assertRaises(ValidationError):
            MapperSettings.from_env({"MONGO_TIMEOUT_MS": "soon"})
        with self.assertRaises(ValidationError):
            MapperSettings(server_selection_timeout_ms=0)


class TestConfigureLogging(unittest.TestCase):
    def test_sets_level_on_mapper_loggers(self):
        configure_logging("debug")
        configure_logging("info")
        for name in ("collection_store", "document_mapper"):
            logger = logging.getLogger(name)
            self.assertEqual(logger.level, logging.INFO)
            self.assertEqual(len(logger.handlers), 1)

    def test_unknown_level(self):
        with self.assertRaises(ValueError):
            configure_logging("chatty")


if __name__ == "__main__":
    unittest.main()
