from stockledger.models.medicine import Medicine, Supplier
from stockledger.models.batch import Batch
from stockledger.models.stock_ledger import StockLedgerEntry
from stockledger.models.stock_summary import MedicineStockSummary
