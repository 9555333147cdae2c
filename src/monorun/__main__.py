from monorun.cli import main

raise SystemExit(main())
