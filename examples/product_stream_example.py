"""
Example: capturing product changes in a stream and reconciling them into
SCD Type 2 history.

The walkthrough mirrors a stream-and-task setup on a warehouse:

1. a source table of products and a change stream on it,
2. a history table where each change to a product becomes a new version,
3. a task that reconciles the stream whenever it has data.
"""

import duckdb

from streamdim.config.models import PipelineConfig
from streamdim.ctl.schema import ensure_ctl_tables, ensure_entity_tables
from streamdim.flow.runner import run_task
from streamdim.flow.stream import ChangeStream


def show_history(con, title):
    print(f"\n{title}")
    history = con.execute("""
        SELECT version_key, product_id, product_name, current_price,
               valid_from, valid_to, is_current
        FROM products.products
        ORDER BY product_id, version_key
    """).pl()
    print(history)


def main():
    """Run the stream and task walkthrough on an in-memory database."""
    con = duckdb.connect(":memory:")
    config = PipelineConfig()
    ensure_ctl_tables(con)
    ensure_entity_tables(con, config.entity)
    stream = ChangeStream(con, config.entity)

    print("=" * 70)
    print("Stream and task example")
    print("=" * 70)

    # Step 1: Initial load
    print("\nStep 1: Inserting products into the source table...")
    stream.insert([
        {"product_id": "1001", "product_name": "Semi Skimmed Milk 2.27L", "current_price": "1.65",
         "category": "Fresh Food"},
        {"product_id": "1002", "product_name": "Free Range Eggs x12", "current_price": "3.20",
         "category": "Fresh Food"},
        {"product_id": "1003", "product_name": "Wholemeal Bread 800g", "current_price": "1.10",
         "category": "Bakery"},
    ])
    print(f"Stream has data: {stream.has_data()} ({stream.count()} changes)")

    result = run_task(con, config)
    print(f"✓ {result.summary}")
    show_history(con, "History after the first task run:")

    # Step 2: Changes
    print("\n" + "=" * 70)
    print("Step 2: Milk price rises, bread is discontinued...")
    stream.update("1001", {"current_price": "1.75", "previous_price": "1.65"})
    stream.delete(["1003"])

    print("Pending changes (net per product):")
    for record in stream.read_batch().records:
        flag = " (update)" if record.is_update else ""
        print(f"  {record.action.value}{flag} {record.key} {record.fields['current_price']}")

    result = run_task(con, config)
    print(f"✓ {result.summary}")
    show_history(con, "History after the second task run:")

    # Step 3: Nothing to do
    print("\n" + "=" * 70)
    result = run_task(con, config)
    print(f"Step 3: third task run -> {result.status}: {result.summary}")

    print("\nKey concepts demonstrated:")
    print("  • Every source change is captured in the stream")
    print("  • Updates close the current version and open a new one")
    print("  • Deletes close the current version without replacement")
    print("  • The task skips runs while the stream is empty")

    con.close()


if __name__ == "__main__":
    main()
