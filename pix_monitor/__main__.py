from pix_monitor.cli import main

raise SystemExit(main())
