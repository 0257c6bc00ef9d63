import sqlite3

import pytest

from bitget_history.core.errors import ConfigurationError
from bitget_history.core.models import DataKind, DepthRecord, TradeRecord
from bitget_history.data.storage import HistoryDatabase, depth_db_name, depth_table, trades_db_name

T1 = TradeRecord("T1", 1000, 50000.0, "buy", 1.0, 0.00002)


class TestTrades:

    def test_duplicate_trade_id_inserted_once(self, tmp_path):
        with HistoryDatabase(tmp_path / "trades.db", DataKind.TRADES) as db:
            assert db.insert_trades([T1]) == (1, 0)
            assert db.insert_trades([T1]) == (0, 1)
            assert db.count("trades") == 1
            row = db.conn.execute("SELECT * FROM trades WHERE trade_id = 'T1'").fetchone()
        assert row == ("T1", 1000, 50000.0, "buy", 1.0, 0.00002)

    def test_reimport_after_reopen(self, tmp_path):
        path = tmp_path / "trades.db"
        records = [T1, TradeRecord("T2", 1001, 50001.0, "sell", 2.0, 0.00004)]
        with HistoryDatabase(path, DataKind.TRADES) as db:
            db.insert_trades(records)
        with HistoryDatabase(path, DataKind.TRADES) as db:
            assert db.insert_trades(records) == (0, 2)
            assert db.count("trades") == 2

    def test_wal_mode_and_clean_close(self, tmp_path):
        path = tmp_path / "trades.db"
        db = HistoryDatabase(path, DataKind.TRADES)
        assert db.conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        db.insert_trades([T1])
        db.close()
        db.close()
        wal = tmp_path / "trades.db-wal"
        assert not wal.exists() or wal.stat().st_size == 0
        with pytest.raises(sqlite3.ProgrammingError):
            db.insert_trades([T1])


class TestDepth:

    def test_duplicate_timestamp_ignored(self, tmp_path):
        with HistoryDatabase(tmp_path / "depth.db", DataKind.DEPTH) as db:
            rec = DepthRecord(1000, 50001.0, 49999.0, 1.0, 2.0)
            assert db.insert_depth("1", [rec, rec]) == (1, 1)
            assert db.insert_depth("2", [rec]) == (1, 0)

    def test_reset_tables(self, tmp_path):
        with HistoryDatabase(tmp_path / "depth.db", DataKind.DEPTH) as db:
            db.insert_depth("1", [DepthRecord(1000, 1.0, 1.0, 1.0, 1.0)])
            db.insert_depth("2", [DepthRecord(1000, 1.0, 1.0, 1.0, 1.0)])
            db.reset_depth_tables(["1"])
            assert db.count("depth_1") == 0
            assert db.count("depth_2") == 1

    def test_reset_rejected_for_trades(self, tmp_path):
        with HistoryDatabase(tmp_path / "trades.db", DataKind.TRADES) as db:
            with pytest.raises(ConfigurationError):
                db.reset_depth_tables(["1"])


class TestNames:

    def test_file_names(self):
        assert trades_db_name("BTCUSDT", "SPBL") == "trades_BTCUSDT_SPBL.db"
        assert depth_db_name("BTCUSDT") == "depth_BTCUSDT.db"

    def test_depth_table_validation(self):
        assert depth_table("1") == "depth_1"
        with pytest.raises(ConfigurationError):
            depth_table("1; DROP TABLE trades")
